"""Routine reminder notifications.

For every user with reminders enabled, each routine time slot is shifted by
the user's preference (``before`` / ``at_time`` / ``after`` by N minutes) and
compared to the user's local time with the same rule the auto-logger uses.
A matched (routine, slot, day) is notified at most once: ``notification_history``
is checked first and its unique constraint rejects a second record.

Per slot the lifecycle is pending -> matched -> duplicate | sent | failed.
Failed sends are recorded and not retried.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from mhealth_core.config import Settings
from mhealth_core.errors import NoSubscriptionsError, UpstreamFetchError
from mhealth_core.models import (
    NotificationHistory,
    NotificationPreference,
    PushSubscription,
    Routine,
    RoutineVariable,
)
from mhealth_core.push import PushResult, WebPushSender
from mhealth_core.routines import SlotMatch, match_slot
from mhealth_core.timezones import get_user_timezone, local_now

logger = logging.getLogger("mhealth_core.notifications")

TIMINGS = ("before", "at_time", "after")
DEFAULT_TIMING = "before"
DEFAULT_REMINDER_MINUTES = 15
MAX_LISTED_VARIABLES = 3

SENT = "sent"
FAILED = "failed"
DUPLICATE = "duplicate"
SKIPPED = "skipped"
# History row written before delivery to claim the slot
PENDING = "pending"


class PushSender(Protocol):
    def send(self, sub: PushSubscription, payload: Dict[str, Any]) -> PushResult: ...


def deliver(sender: PushSender, subs: List[PushSubscription], payload: Dict[str, Any], sent_at: datetime) -> List[PushResult]:
    """Send ``payload`` to each subscription and update its bookkeeping columns.

    A sender that raises is recorded as a failed delivery for that subscription
    only. Changes are left in the session for the caller to commit.
    """
    results: List[PushResult] = []
    for sub in subs:
        try:
            result = sender.send(sub, payload)
        except Exception as e:
            logger.exception("push.deliver crashed sub=%s", sub.id)
            result = PushResult(sub.id, False, error=f"{e.__class__.__name__}: {e}")
        if result.success:
            sub.last_used_at = sent_at
        elif result.should_deactivate:
            logger.info("push.deactivate sub=%s user=%s", sub.id, sub.user_id)
            sub.is_active = False
        results.append(result)
    return results


def normalize_timing(timing: Optional[str]) -> str:
    return timing if timing in TIMINGS else DEFAULT_TIMING


def reminder_minutes(value: Optional[int]) -> int:
    """Stored lead time in minutes; null or 0 (rows predating validation) mean the default."""
    return abs(value) if value else DEFAULT_REMINDER_MINUTES


def notification_offset(timing: Optional[str], minutes: Optional[int]) -> timedelta:
    """Offset from the routine slot to the moment the reminder is due."""
    timing = normalize_timing(timing)
    if timing == "at_time":
        return timedelta(0)
    delta = timedelta(minutes=reminder_minutes(minutes))
    return -delta if timing == "before" else delta


def build_payload(routine: Routine, label: str, timing: str, minutes: int, variable_labels: List[str], icon: str) -> Dict[str, Any]:
    if timing == "before":
        title = "Routine Reminder"
        body = f'Your routine "{routine.name}" starts in {minutes} minutes at {label}'
    elif timing == "at_time":
        title = "Routine Time"
        body = f'Time for your routine: "{routine.name}"'
    else:
        title = "Routine Check-in"
        body = f'How did your routine "{routine.name}" go?'
    if variable_labels:
        listed = ", ".join(variable_labels[:MAX_LISTED_VARIABLES])
        more = "..." if len(variable_labels) > MAX_LISTED_VARIABLES else ""
        body += f"\nVariables: {listed}{more}"
    return {
        "title": title,
        "body": body,
        "icon": icon,
        "badge": icon,
        "tag": f"routine-{routine.id}-{label}",
        "requireInteraction": True,
        "data": {
            "type": "routine_reminder",
            "routineId": routine.id,
            "routineName": routine.name,
            "timeOfDay": label,
            "variables": variable_labels,
            "url": "/routines",
        },
        "actions": [
            {"action": "log_routine", "title": "Log Now"},
            {"action": "open", "title": "Open App"},
        ],
    }


@dataclass
class NotificationOutcome:
    user_id: int
    status: str
    routine_id: Optional[int] = None
    slot: Optional[str] = None
    reason: Optional[str] = None
    delivered: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NotificationReport:
    timestamp: str
    total_users_checked: int = 0
    outcomes: List[NotificationOutcome] = field(default_factory=list)

    @property
    def notifications_sent(self) -> int:
        return sum(1 for o in self.outcomes if o.status == SENT)

    @property
    def errors(self) -> int:
        return sum(1 for o in self.outcomes if o.status == FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "notifications_sent": self.notifications_sent,
            "errors": self.errors,
            "total_users_checked": self.total_users_checked,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class _DueSlot:
    routine: Routine
    match: SlotMatch
    variable_labels: List[str] = field(default_factory=list)


class NotificationScheduler:
    def __init__(self, db: Session, sender: Optional[PushSender] = None, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or Settings()
        self.sender = sender or WebPushSender(self.settings)

    def fetch_preferences(self) -> List[NotificationPreference]:
        return (
            self.db.query(NotificationPreference)
            .filter(NotificationPreference.routine_reminder_enabled.is_(True))
            .order_by(NotificationPreference.user_id)
            .all()
        )

    def run(self, now: Optional[datetime] = None) -> NotificationReport:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        try:
            prefs = self.fetch_preferences()
        except SQLAlchemyError as e:
            logger.error("notify.fetch failed: %s", e)
            raise UpstreamFetchError(str(e)) from e

        report = NotificationReport(
            timestamp=now.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
            total_users_checked=len(prefs),
        )
        rows = [(p.user_id, p.routine_notification_timing, p.routine_reminder_minutes) for p in prefs]
        for user_id, raw_timing, raw_minutes in rows:
            timing = normalize_timing(raw_timing)
            minutes = reminder_minutes(raw_minutes)
            try:
                due = self.due_slots(user_id, timing, minutes, now)
                for slot in due:
                    report.outcomes.append(self.notify(user_id, slot, timing, minutes, now))
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error("notify.user failed user=%s err=%s", user_id, e)
                report.outcomes.append(NotificationOutcome(user_id, FAILED, reason=f"storage_error: {e}"))
            except Exception as e:
                self.db.rollback()
                logger.exception("notify.user crashed user=%s", user_id)
                report.outcomes.append(NotificationOutcome(user_id, FAILED, reason=f"{e.__class__.__name__}: {e}"))
        logger.info(
            "notify.run users=%d sent=%d errors=%d",
            report.total_users_checked,
            report.notifications_sent,
            report.errors,
        )
        return report

    def due_slots(self, user_id: int, timing: str, minutes: int, now: datetime) -> List[_DueSlot]:
        tz_name = get_user_timezone(self.db, user_id, default=self.settings.default_timezone)
        now_local = local_now(tz_name, now)
        offset = notification_offset(timing, minutes)
        routines = (
            self.db.query(Routine)
            .filter(Routine.user_id == user_id, Routine.is_active.is_(True))
            .order_by(Routine.id)
            .all()
        )
        groups: Dict[Tuple[int, str, str], _DueSlot] = {}
        for routine in routines:
            for rv in sorted(routine.variables, key=lambda v: v.id):
                match = match_slot(
                    rv.weekdays,
                    rv.times,
                    now_local,
                    offset=offset,
                    tolerance_minutes=self.settings.match_tolerance_minutes,
                )
                if match is None:
                    continue
                key = (routine.id, match.slot_date, match.label)
                slot = groups.setdefault(key, _DueSlot(routine=routine, match=match))
                slot.variable_labels.append(self._variable_label(rv))
        return list(groups.values())

    @staticmethod
    def _variable_label(rv: RoutineVariable) -> str:
        return rv.variable.label if rv.variable is not None else "Unknown Variable"

    def already_notified(self, user_id: int, routine_id: int, slot_date: str, slot_time: str) -> bool:
        row = (
            self.db.query(NotificationHistory.id)
            .filter(
                NotificationHistory.user_id == user_id,
                NotificationHistory.routine_id == routine_id,
                NotificationHistory.slot_date == slot_date,
                NotificationHistory.slot_time == slot_time,
            )
            .first()
        )
        return row is not None

    def notify(self, user_id: int, slot: _DueSlot, timing: str, minutes: int, now: datetime) -> NotificationOutcome:
        routine = slot.routine
        slot_date, label = slot.match.slot_date, slot.match.label
        slot_key = f"{slot_date}T{label}"
        if self.already_notified(user_id, routine.id, slot_date, label):
            logger.info("notify.duplicate user=%s routine=%s slot=%s", user_id, routine.id, slot_key)
            return NotificationOutcome(user_id, DUPLICATE, routine.id, slot_key, reason="already_sent")

        subs = (
            self.db.query(PushSubscription)
            .filter(PushSubscription.user_id == user_id, PushSubscription.is_active.is_(True))
            .order_by(PushSubscription.id)
            .all()
        )
        if not subs:
            logger.info("notify.skip user=%s routine=%s reason=no_subscriptions", user_id, routine.id)
            return NotificationOutcome(user_id, SKIPPED, routine.id, slot_key, reason="no_active_subscriptions")

        payload = build_payload(routine, label, timing, minutes, slot.variable_labels, self.settings.notification_icon)
        routine_id = routine.id
        sent_at = now.astimezone(timezone.utc).replace(tzinfo=None)
        history = NotificationHistory(
            user_id=user_id,
            routine_id=routine_id,
            slot_date=slot_date,
            slot_time=label,
            notification_type="routine_reminder",
            title=payload["title"],
            body=payload["body"],
            sent_at=sent_at,
            delivery_status=PENDING,
        )
        self.db.add(history)
        try:
            self.db.commit()
        except IntegrityError:
            # Another run claimed this slot between our check and insert
            self.db.rollback()
            logger.info("notify.duplicate user=%s routine=%s slot=%s (constraint)", user_id, routine_id, slot_key)
            return NotificationOutcome(user_id, DUPLICATE, routine_id, slot_key, reason="unique_constraint")

        results = deliver(self.sender, subs, payload, sent_at)
        delivered = sum(1 for r in results if r.success)
        errors = [r.error or "unknown error" for r in results if not r.success]
        status = SENT if delivered > 0 else FAILED
        history.delivery_status = status
        history.delivery_details = {
            "total_subscriptions": len(results),
            "successful_deliveries": delivered,
            "failed_deliveries": len(results) - delivered,
            "timing": timing,
            "minutes": minutes,
            "variables": slot.variable_labels,
        }
        self.db.commit()

        logger.info("notify.%s user=%s routine=%s slot=%s delivered=%d/%d", status, user_id, routine_id, slot_key, delivered, len(results))
        reason = "; ".join(errors) if status == FAILED else None
        return NotificationOutcome(user_id, status, routine_id, slot_key, reason=reason, delivered=delivered, total=len(results))


def run_routine_notifications(
    db: Session,
    sender: Optional[PushSender] = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> NotificationReport:
    return NotificationScheduler(db, sender=sender, settings=settings).run(now)


def send_to_user(
    db: Session,
    user_id: int,
    title: str,
    body: str,
    sender: Optional[PushSender] = None,
    url: str = "/",
    tag: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    notification_type: str = "manual",
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Push an ad-hoc notification to every active device of ``user_id``.

    Raises ``NoSubscriptionsError`` when there is nothing to deliver to.
    """
    settings = settings or Settings()
    sender = sender or WebPushSender(settings)
    now = now or datetime.now(timezone.utc)
    sent_at = now.astimezone(timezone.utc).replace(tzinfo=None)
    subs = (
        db.query(PushSubscription)
        .filter(PushSubscription.user_id == user_id, PushSubscription.is_active.is_(True))
        .order_by(PushSubscription.id)
        .all()
    )
    if not subs:
        raise NoSubscriptionsError(f"user {user_id} has no active push subscriptions")

    payload = {
        "title": title,
        "body": body,
        "icon": settings.notification_icon,
        "badge": settings.notification_icon,
        "tag": tag,
        "requireInteraction": False,
        "data": {**(data or {}), "url": url},
        "actions": [{"action": "open", "title": "Open App"}],
    }
    results = deliver(sender, subs, payload, sent_at)
    delivered = sum(1 for r in results if r.success)
    db.add(
        NotificationHistory(
            user_id=user_id,
            routine_id=None,
            slot_date=sent_at.date().isoformat(),
            slot_time=sent_at.strftime("%H:%M"),
            notification_type=notification_type,
            title=title,
            body=body,
            sent_at=sent_at,
            delivery_status=SENT if delivered else FAILED,
            delivery_details={
                "total_subscriptions": len(results),
                "successful_deliveries": delivered,
                "failed_deliveries": len(results) - delivered,
            },
        )
    )
    db.commit()
    logger.info("notify.manual user=%s type=%s delivered=%d/%d", user_id, notification_type, delivered, len(results))
    return {
        "success": True,
        "message": f"Notification sent to {delivered} device(s)",
        "results": {"total": len(results), "successful": delivered, "failed": len(results) - delivered},
        "details": [
            {"subscription_id": r.subscription_id, "success": r.success, "error": r.error} for r in results
        ],
    }


__all__ = [
    "TIMINGS",
    "DEFAULT_REMINDER_MINUTES",
    "SENT",
    "FAILED",
    "DUPLICATE",
    "SKIPPED",
    "PENDING",
    "deliver",
    "normalize_timing",
    "reminder_minutes",
    "notification_offset",
    "build_payload",
    "NotificationOutcome",
    "NotificationReport",
    "NotificationScheduler",
    "run_routine_notifications",
    "send_to_user",
]
