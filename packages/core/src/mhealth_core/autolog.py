"""Routine auto-logging job.

One run walks every routine variable, works out the owner's local time and
writes the variable's default value when a scheduled slot is hit. Each item
ends with an ``ItemOutcome``; one failing item never aborts the batch.

At most one auto log exists per (user, variable, routine, slot). The
``DuplicateGuard`` query catches the common case and the ``uq_logs_routine_slot``
constraint catches overlapping runs.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from mhealth_core.config import Settings
from mhealth_core.errors import DuplicateCheckError, DuplicateLogError, UpstreamFetchError
from mhealth_core.models import LogEntry, Routine, RoutineVariable
from mhealth_core.routines import SlotMatch, match_slot
from mhealth_core.timezones import get_user_timezone, local_now

logger = logging.getLogger("mhealth_core.autolog")

AUTO_SOURCE = "auto"

# Outcome statuses
LOGGED = "logged"
NO_MATCH = "no_match"
DUPLICATE = "duplicate"
SKIPPED = "skipped"
FAILED = "failed"


def _utc_naive(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def stringify_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value if value is not None else "")


@dataclass(frozen=True)
class RoutineVariableRow:
    """Snapshot of a routine variable taken at the start of a run."""
    id: int
    routine_id: int
    variable_id: int
    weekdays: Any
    times: Any
    default_value: Any

    @classmethod
    def from_model(cls, rv: RoutineVariable) -> "RoutineVariableRow":
        return cls(rv.id, rv.routine_id, rv.variable_id, rv.weekdays, rv.times, rv.default_value)


@dataclass
class ItemOutcome:
    routine_variable_id: int
    status: str
    reason: Optional[str] = None
    user_id: Optional[int] = None
    log_id: Optional[int] = None
    slot: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AutoLogReport:
    timestamp: str
    outcomes: List[ItemOutcome] = field(default_factory=list)

    @property
    def logged(self) -> List[int]:
        return [o.routine_variable_id for o in self.outcomes if o.status == LOGGED]

    def to_dict(self, include_no_match: bool = False) -> Dict[str, Any]:
        outcomes = [o for o in self.outcomes if include_no_match or o.status != NO_MATCH]
        return {
            "logged": self.logged,
            "timestamp": self.timestamp,
            "outcomes": [o.to_dict() for o in outcomes],
        }


class DuplicateGuard:
    """Existence checks run before a routine log is written.

    Each check raises ``DuplicateCheckError`` if the lookup itself fails, so
    callers can tell "exists" apart from "unknown".
    """

    def __init__(self, db: Session):
        self.db = db

    def _exists(self, *criteria) -> bool:
        try:
            row = self.db.query(LogEntry.id).filter(*criteria).first()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DuplicateCheckError(str(e)) from e
        return row is not None

    def already_logged(self, user_id: int, variable_id: int, routine_id: int, slot_utc: datetime) -> bool:
        """True when a log for the key already covers the slot minute."""
        window_end = slot_utc + timedelta(minutes=1)
        return self._exists(
            LogEntry.user_id == user_id,
            LogEntry.variable_id == variable_id,
            LogEntry.routine_id == routine_id,
            or_(
                LogEntry.slot_at == slot_utc,
                and_(LogEntry.date >= slot_utc, LogEntry.date < window_end),
            ),
        )

    def logged_on_day(self, user_id: int, variable_id: int, day_start_utc: datetime, day_end_utc: datetime) -> bool:
        """True when the variable has any log, manual or not, inside the local day."""
        return self._exists(
            LogEntry.user_id == user_id,
            LogEntry.variable_id == variable_id,
            LogEntry.date >= day_start_utc,
            LogEntry.date < day_end_utc,
        )


class AutoLogWriter:
    def __init__(self, db: Session):
        self.db = db

    def write(
        self,
        rv: RoutineVariableRow,
        user_id: int,
        tz_name: str,
        now_utc: datetime,
        slot_utc: datetime,
        source: str = AUTO_SOURCE,
        notes: Optional[str] = None,
    ) -> LogEntry:
        entry = LogEntry(
            user_id=user_id,
            variable_id=rv.variable_id,
            routine_id=rv.routine_id,
            date=now_utc,
            value=stringify_value(rv.default_value),
            source=source,
            notes=notes or f"Auto-logged from routine ({tz_name})",
            slot_at=slot_utc,
        )
        self.db.add(entry)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateLogError(str(e.orig)) from e
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(entry)
        return entry


class AutoLogRunner:
    """Runs the auto-logging job once against a session."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        guard: Optional[DuplicateGuard] = None,
        writer: Optional[AutoLogWriter] = None,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.guard = guard or DuplicateGuard(db)
        self.writer = writer or AutoLogWriter(db)
        self._owners: Dict[int, Optional[Tuple[int, bool]]] = {}
        self._zones: Dict[int, str] = {}

    def fetch_routine_variables(self) -> List[RoutineVariableRow]:
        rows = self.db.query(RoutineVariable).order_by(RoutineVariable.id).all()
        return [RoutineVariableRow.from_model(rv) for rv in rows]

    def owner_of(self, routine_id: int) -> Optional[Tuple[int, bool]]:
        """(user_id, is_active) of the routine, looked up once per run."""
        if routine_id not in self._owners:
            routine = self.db.get(Routine, routine_id)
            self._owners[routine_id] = (routine.user_id, bool(routine.is_active)) if routine else None
        return self._owners[routine_id]

    def timezone_of(self, user_id: int) -> str:
        if user_id not in self._zones:
            self._zones[user_id] = get_user_timezone(self.db, user_id, default=self.settings.default_timezone)
        return self._zones[user_id]

    def run(self, now: Optional[datetime] = None) -> AutoLogReport:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        try:
            items = self.fetch_routine_variables()
        except SQLAlchemyError as e:
            logger.error("autolog.fetch failed: %s", e)
            raise UpstreamFetchError(str(e)) from e

        report = AutoLogReport(timestamp=now.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"))
        for rv in items:
            report.outcomes.append(self.process(rv, now))
        logger.info(
            "autolog.run items=%d logged=%d failed=%d",
            len(items),
            len(report.logged),
            sum(1 for o in report.outcomes if o.status == FAILED),
        )
        return report

    def process(self, rv: RoutineVariableRow, now: datetime) -> ItemOutcome:
        try:
            owner = self.owner_of(rv.routine_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("autolog.skip rv=%s reason=owner_lookup_failed err=%s", rv.id, e)
            return ItemOutcome(rv.id, FAILED, reason="owner_lookup_failed")
        if owner is None:
            logger.warning("autolog.skip rv=%s routine=%s reason=routine_not_found", rv.id, rv.routine_id)
            return ItemOutcome(rv.id, SKIPPED, reason="routine_not_found")
        user_id, active = owner
        if not active:
            return ItemOutcome(rv.id, SKIPPED, reason="routine_inactive", user_id=user_id)

        try:
            tz_name = self.timezone_of(user_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("autolog.skip rv=%s user=%s reason=timezone_lookup_failed err=%s", rv.id, user_id, e)
            return ItemOutcome(rv.id, FAILED, reason="timezone_lookup_failed", user_id=user_id)

        match: Optional[SlotMatch] = match_slot(
            rv.weekdays,
            rv.times,
            local_now(tz_name, now),
            tolerance_minutes=self.settings.match_tolerance_minutes,
        )
        if match is None:
            return ItemOutcome(rv.id, NO_MATCH, user_id=user_id)

        slot_key = f"{match.slot_date}T{match.label}"
        slot_utc = _utc_naive(match.slot_local)
        try:
            if self.guard.already_logged(user_id, rv.variable_id, rv.routine_id, slot_utc):
                logger.info("autolog.duplicate rv=%s user=%s slot=%s", rv.id, user_id, slot_key)
                return ItemOutcome(rv.id, DUPLICATE, reason="already_logged", user_id=user_id, slot=slot_key)
        except DuplicateCheckError as e:
            logger.error("autolog.guard failed rv=%s user=%s err=%s", rv.id, user_id, e)
            return ItemOutcome(rv.id, FAILED, reason="duplicate_check_failed", user_id=user_id, slot=slot_key)

        try:
            entry = self.writer.write(rv, user_id, tz_name, _utc_naive(now), slot_utc)
        except DuplicateLogError:
            logger.info("autolog.duplicate rv=%s user=%s slot=%s (constraint)", rv.id, user_id, slot_key)
            return ItemOutcome(rv.id, DUPLICATE, reason="unique_constraint", user_id=user_id, slot=slot_key)
        except SQLAlchemyError as e:
            logger.error("autolog.insert failed rv=%s user=%s err=%s", rv.id, user_id, e)
            return ItemOutcome(rv.id, FAILED, reason=f"insert_failed: {e}", user_id=user_id, slot=slot_key)

        logger.info("autolog.logged rv=%s user=%s log=%s slot=%s tz=%s", rv.id, user_id, entry.id, slot_key, tz_name)
        return ItemOutcome(rv.id, LOGGED, user_id=user_id, log_id=entry.id, slot=slot_key)


def run_auto_log(db: Session, now: Optional[datetime] = None, settings: Optional[Settings] = None) -> AutoLogReport:
    return AutoLogRunner(db, settings=settings).run(now)


__all__ = [
    "AUTO_SOURCE",
    "LOGGED",
    "NO_MATCH",
    "DUPLICATE",
    "SKIPPED",
    "FAILED",
    "stringify_value",
    "RoutineVariableRow",
    "ItemOutcome",
    "AutoLogReport",
    "DuplicateGuard",
    "AutoLogWriter",
    "AutoLogRunner",
    "run_auto_log",
]
