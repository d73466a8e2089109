"""Routine log backfill.

Two entry points write routine logs for slots that were not caught live:

* ``log_planned`` takes explicit (routine variable, local date, time) items
  from a user, e.g. after confirming a missed day in the app. A variable that
  already has any log on that local day is skipped.
* ``backfill_day`` replays the auto-logger for one calendar date across all
  active routines, writing every slot that is already due and not yet logged.

Both go through ``DuplicateGuard`` and ``AutoLogWriter`` so the slot unique
constraint still holds.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mhealth_core.autolog import (
    AUTO_SOURCE,
    DUPLICATE,
    FAILED,
    LOGGED,
    SKIPPED,
    AutoLogWriter,
    DuplicateGuard,
    ItemOutcome,
    RoutineVariableRow,
)
from mhealth_core.config import Settings
from mhealth_core.errors import DuplicateCheckError, DuplicateLogError, UpstreamFetchError
from mhealth_core.models import Routine, RoutineVariable
from mhealth_core.routines import normalize_weekdays, parse_hhmm, time_labels
from mhealth_core.timezones import get_user_timezone

logger = logging.getLogger("mhealth_core.backfill")

PLANNED_SOURCE = "routine"


@dataclass
class PlannedLog:
    routine_variable_id: int
    date: date                 # local calendar day of the user
    time: Optional[str] = None  # "HH:MM"; first scheduled time when omitted


@dataclass
class BackfillResult:
    outcomes: List[ItemOutcome] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(1 for o in self.outcomes if o.status == LOGGED)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status in (SKIPPED, DUPLICATE))

    @property
    def errors(self) -> List[str]:
        return [f"routine variable {o.routine_variable_id}: {o.reason}" for o in self.outcomes if o.status == FAILED]

    def to_dict(self) -> Dict[str, Any]:
        message = f"Created {self.created} logs, skipped {self.skipped}"
        if self.errors:
            message += f", with {len(self.errors)} errors"
        return {
            "success": True,
            "created": self.created,
            "skipped": self.skipped,
            "errors": self.errors,
            "message": message,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def _to_utc_naive(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _local_day_bounds(day: date, tz: ZoneInfo):
    start = datetime.combine(day, time(0, 0), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=tz)
    return _to_utc_naive(start), _to_utc_naive(end)


class RoutineBackfill:
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

    def _timezone(self, user_id: int) -> str:
        return get_user_timezone(self.db, user_id, default=self.settings.default_timezone)

    def _write(self, rv: RoutineVariableRow, user_id: int, tz_name: str, slot_utc: datetime, slot_key: str, **kwargs) -> ItemOutcome:
        try:
            entry = self.writer.write(rv, user_id, tz_name, slot_utc, slot_utc, **kwargs)
        except DuplicateLogError:
            return ItemOutcome(rv.id, DUPLICATE, reason="unique_constraint", user_id=user_id, slot=slot_key)
        except SQLAlchemyError as e:
            logger.error("backfill.insert failed rv=%s user=%s err=%s", rv.id, user_id, e)
            return ItemOutcome(rv.id, FAILED, reason=f"insert_failed: {e}", user_id=user_id, slot=slot_key)
        return ItemOutcome(rv.id, LOGGED, user_id=user_id, log_id=entry.id, slot=slot_key)

    def log_planned(self, user_id: int, items: Iterable[PlannedLog]) -> BackfillResult:
        result = BackfillResult()
        tz_name = self._timezone(user_id)
        tz = ZoneInfo(tz_name)
        for item in items:
            result.outcomes.append(self._log_one(user_id, item, tz_name, tz))
        logger.info("backfill.planned user=%s created=%d skipped=%d errors=%d",
                    user_id, result.created, result.skipped, len(result.errors))
        return result

    def _log_one(self, user_id: int, item: PlannedLog, tz_name: str, tz: ZoneInfo) -> ItemOutcome:
        rv = self.db.get(RoutineVariable, item.routine_variable_id)
        routine = rv.routine if rv is not None else None
        if routine is None or routine.user_id != user_id:
            return ItemOutcome(item.routine_variable_id, FAILED, reason="routine_variable_not_found", user_id=user_id)
        label = item.time or next(iter(time_labels(rv.times)), None)
        try:
            minutes = parse_hhmm(label) if label else None
        except ValueError as e:
            return ItemOutcome(rv.id, FAILED, reason=f"invalid_time: {e}", user_id=user_id)
        if minutes is None:
            return ItemOutcome(rv.id, FAILED, reason="no_scheduled_time", user_id=user_id)

        row = RoutineVariableRow.from_model(rv)
        slot_local = datetime.combine(item.date, time(minutes // 60, minutes % 60), tzinfo=tz)
        slot_key = f"{item.date.isoformat()}T{minutes // 60:02d}:{minutes % 60:02d}"
        day_start, day_end = _local_day_bounds(item.date, tz)
        try:
            if self.guard.logged_on_day(user_id, row.variable_id, day_start, day_end):
                return ItemOutcome(row.id, SKIPPED, reason="already_logged_that_day", user_id=user_id, slot=slot_key)
        except DuplicateCheckError as e:
            logger.error("backfill.guard failed rv=%s err=%s", row.id, e)
            return ItemOutcome(row.id, FAILED, reason="duplicate_check_failed", user_id=user_id, slot=slot_key)
        return self._write(
            row, user_id, tz_name, _to_utc_naive(slot_local), slot_key,
            source=PLANNED_SOURCE,
            notes=f"Auto-generated from routine: {routine.name}",
        )

    def backfill_day(self, target: date, now: Optional[datetime] = None) -> BackfillResult:
        """Write every due, unlogged slot of active routines on the local date ``target``."""
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        try:
            pairs = [
                (RoutineVariableRow.from_model(rv), user_id)
                for rv, user_id in (
                    self.db.query(RoutineVariable, Routine.user_id)
                    .join(Routine, RoutineVariable.routine_id == Routine.id)
                    .filter(Routine.is_active.is_(True))
                    .order_by(RoutineVariable.id)
                    .all()
                )
            ]
        except SQLAlchemyError as e:
            logger.error("backfill.fetch failed: %s", e)
            raise UpstreamFetchError(str(e)) from e

        result = BackfillResult()
        zones: Dict[int, str] = {}
        for rv, user_id in pairs:
            if user_id not in zones:
                zones[user_id] = self._timezone(user_id)
            tz_name = zones[user_id]
            if target.isoweekday() not in normalize_weekdays(rv.weekdays):
                continue
            for label in time_labels(rv.times):
                try:
                    minutes = parse_hhmm(label)
                except ValueError:
                    continue
                slot_local = datetime.combine(target, time(minutes // 60, minutes % 60), tzinfo=ZoneInfo(tz_name))
                if slot_local > now:
                    continue
                slot_utc = _to_utc_naive(slot_local)
                slot_key = f"{target.isoformat()}T{minutes // 60:02d}:{minutes % 60:02d}"
                try:
                    if self.guard.already_logged(user_id, rv.variable_id, rv.routine_id, slot_utc):
                        result.outcomes.append(
                            ItemOutcome(rv.id, DUPLICATE, reason="already_logged", user_id=user_id, slot=slot_key)
                        )
                        continue
                except DuplicateCheckError as e:
                    logger.error("backfill.guard failed rv=%s err=%s", rv.id, e)
                    result.outcomes.append(
                        ItemOutcome(rv.id, FAILED, reason="duplicate_check_failed", user_id=user_id, slot=slot_key)
                    )
                    continue
                result.outcomes.append(self._write(rv, user_id, tz_name, slot_utc, slot_key, source=AUTO_SOURCE))
        logger.info("backfill.day date=%s created=%d skipped=%d errors=%d",
                    target.isoformat(), result.created, result.skipped, len(result.errors))
        return result


__all__ = ["PLANNED_SOURCE", "PlannedLog", "BackfillResult", "RoutineBackfill"]
