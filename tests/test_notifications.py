from datetime import datetime, timedelta, timezone

import pytest
from requests.exceptions import ConnectionError as PushConnectionError
from sqlalchemy.exc import IntegrityError, OperationalError

from mhealth_core.errors import UpstreamFetchError
from mhealth_core.db import SessionLocal
from mhealth_core.models import NotificationHistory, NotificationPreference, PushSubscription, Routine
from mhealth_core.notifications import (
    NotificationScheduler,
    build_payload,
    notification_offset,
    run_routine_notifications,
)
from mhealth_core.push import PushResult

# Monday 2025-09-08 07:45 in Europe/Stockholm
MONDAY_0745 = datetime(2025, 9, 8, 5, 45, 10, tzinfo=timezone.utc)


class FakeSender:
    def __init__(self, fail_endpoints=(), gone_endpoints=()):
        self.sent = []
        self.fail_endpoints = set(fail_endpoints)
        self.gone_endpoints = set(gone_endpoints)

    def send(self, sub, payload):
        self.sent.append((sub.endpoint, payload))
        if sub.endpoint in self.gone_endpoints:
            return PushResult(sub.id, False, error="410 Gone", should_deactivate=True)
        if sub.endpoint in self.fail_endpoints:
            return PushResult(sub.id, False, error="500 Server Error")
        return PushResult(sub.id, True)


@pytest.fixture
def reminder_user(db, make_user, make_routine_variable):
    def _setup(timing="before", minutes=15, endpoints=("https://push.example/a",), username="alice"):
        user = make_user(username)
        db.add(NotificationPreference(
            user_id=user.id,
            routine_reminder_enabled=True,
            routine_reminder_minutes=minutes,
            routine_notification_timing=timing,
        ))
        for ep in endpoints:
            db.add(PushSubscription(user_id=user.id, endpoint=ep, p256dh_key="p", auth_key="a"))
        db.commit()
        rv = make_routine_variable(user, weekdays=[1], times=["08:00"], label="Water")
        return user, rv
    return _setup


def test_notification_offset():
    assert notification_offset("before", 15) == -timedelta(minutes=15)
    assert notification_offset("after", 10) == timedelta(minutes=10)
    assert notification_offset("at_time", 30) == timedelta(0)
    assert notification_offset("before", -20) == -timedelta(minutes=20)
    # Unknown timing behaves like "before"; missing minutes default to 15
    assert notification_offset("sometime", None) == -timedelta(minutes=15)


def test_before_reminder_sent_at_slot_minus_minutes(db, reminder_user):
    user, rv = reminder_user(timing="before", minutes=15)
    sender = FakeSender()

    report = run_routine_notifications(db, sender=sender, now=MONDAY_0745)

    assert report.notifications_sent == 1
    assert report.total_users_checked == 1
    assert len(sender.sent) == 1
    payload = sender.sent[0][1]
    assert payload["title"] == "Routine Reminder"
    assert 'starts in 15 minutes at 08:00' in payload["body"]
    assert "Variables: Water" in payload["body"]
    history = db.query(NotificationHistory).all()
    assert len(history) == 1
    assert (history[0].slot_date, history[0].slot_time, history[0].delivery_status) == ("2025-09-08", "08:00", "sent")


@pytest.mark.parametrize("timing,now,title", [
    ("at_time", MONDAY_0745 + timedelta(minutes=15), "Routine Time"),
    ("after", MONDAY_0745 + timedelta(minutes=45), "Routine Check-in"),
])
def test_at_time_and_after_windows(db, reminder_user, timing, now, title):
    reminder_user(timing=timing, minutes=30)
    sender = FakeSender()
    report = run_routine_notifications(db, sender=sender, now=now)
    assert report.notifications_sent == 1
    assert sender.sent[0][1]["title"] == title


def test_no_match_outside_window(db, reminder_user):
    reminder_user(timing="before", minutes=15)
    sender = FakeSender()
    report = run_routine_notifications(db, sender=sender, now=MONDAY_0745 + timedelta(minutes=1))
    assert report.notifications_sent == 0
    assert sender.sent == []


def test_second_run_same_day_is_suppressed(db, reminder_user):
    reminder_user()
    sender = FakeSender()
    run_routine_notifications(db, sender=sender, now=MONDAY_0745)
    report = run_routine_notifications(db, sender=sender, now=MONDAY_0745 + timedelta(seconds=30))
    assert report.notifications_sent == 0
    assert [o.status for o in report.outcomes] == ["duplicate"]
    assert len(sender.sent) == 1
    assert db.query(NotificationHistory).count() == 1


def test_variables_sharing_a_slot_are_grouped(db, reminder_user, make_routine_variable):
    user, rv = reminder_user()
    routine = db.get(Routine, rv.routine_id)
    make_routine_variable(user, routine=routine, label="Vitamin D")
    sender = FakeSender()
    report = run_routine_notifications(db, sender=sender, now=MONDAY_0745)
    assert report.notifications_sent == 1
    assert "Variables: Water, Vitamin D" in sender.sent[0][1]["body"]


def test_gone_subscription_is_deactivated(db, reminder_user):
    gone = "https://push.example/gone"
    ok = "https://push.example/ok"
    reminder_user(endpoints=(gone, ok))
    sender = FakeSender(gone_endpoints=[gone])

    report = run_routine_notifications(db, sender=sender, now=MONDAY_0745)

    assert report.outcomes[0].status == "sent"
    assert (report.outcomes[0].delivered, report.outcomes[0].total) == (1, 2)
    db.expire_all()
    states = {s.endpoint: s.is_active for s in db.query(PushSubscription).all()}
    assert states == {gone: False, ok: True}


def test_all_deliveries_failing_records_failed(db, reminder_user):
    ep = "https://push.example/down"
    reminder_user(endpoints=(ep,))
    report = run_routine_notifications(db, sender=FakeSender(fail_endpoints=[ep]), now=MONDAY_0745)
    assert report.errors == 1
    assert report.outcomes[0].status == "failed"
    history = db.query(NotificationHistory).one()
    assert history.delivery_status == "failed"
    # Failed slots are not retried
    again = run_routine_notifications(db, sender=FakeSender(), now=MONDAY_0745)
    assert again.outcomes[0].status == "duplicate"


def test_user_without_subscriptions_is_skipped(db, reminder_user):
    reminder_user(endpoints=())
    report = run_routine_notifications(db, sender=FakeSender(), now=MONDAY_0745)
    assert report.outcomes[0].status == "skipped"
    assert report.outcomes[0].reason == "no_active_subscriptions"
    assert db.query(NotificationHistory).count() == 0


def test_disabled_preferences_are_ignored(db, reminder_user):
    user, _ = reminder_user()
    pref = db.query(NotificationPreference).filter_by(user_id=user.id).one()
    pref.routine_reminder_enabled = False
    db.commit()
    report = run_routine_notifications(db, sender=FakeSender(), now=MONDAY_0745)
    assert report.total_users_checked == 0


def test_inactive_routines_are_not_notified(db, reminder_user):
    _, rv = reminder_user()
    db.get(Routine, rv.routine_id).is_active = False
    db.commit()
    report = run_routine_notifications(db, sender=FakeSender(), now=MONDAY_0745)
    assert report.outcomes == []


def test_preference_fetch_failure(db, monkeypatch):
    def boom(self):
        raise OperationalError("SELECT", {}, Exception("gone"))

    monkeypatch.setattr(NotificationScheduler, "fetch_preferences", boom)
    with pytest.raises(UpstreamFetchError):
        run_routine_notifications(db, sender=FakeSender())


def test_payload_lists_at_most_three_variables():
    routine = Routine(id=7, name="Morning")
    payload = build_payload(routine, "08:00", "after", 10, ["a", "b", "c", "d"], "/icon.png")
    assert payload["body"].endswith("Variables: a, b, c...")
    assert payload["tag"] == "routine-7-08:00"
    assert payload["data"]["url"] == "/routines"


class RaisingSender(FakeSender):
    """Raises a network error for the listed endpoints instead of returning a result."""

    def __init__(self, raise_endpoints=(), **kwargs):
        super().__init__(**kwargs)
        self.raise_endpoints = set(raise_endpoints)

    def send(self, sub, payload):
        if sub.endpoint in self.raise_endpoints:
            self.sent.append((sub.endpoint, payload))
            raise PushConnectionError("connection refused")
        return super().send(sub, payload)


def test_sender_exception_does_not_abort_other_users(db, reminder_user):
    down = "https://push.example/unreachable"
    up = "https://push.example/reachable"
    reminder_user(username="alice", endpoints=(down,))
    reminder_user(username="bob", endpoints=(up,))
    sender = RaisingSender(raise_endpoints=[down])

    report = run_routine_notifications(db, sender=sender, now=MONDAY_0745)

    assert [e for e, _ in sender.sent] == [down, up]
    statuses = sorted(o.status for o in report.outcomes)
    assert statuses == ["failed", "sent"]
    failed = next(o for o in report.outcomes if o.status == "failed")
    assert "connection refused" in failed.reason
    db.expire_all()
    assert {h.delivery_status for h in db.query(NotificationHistory).all()} == {"sent", "failed"}
    # Network errors leave the subscription active
    assert all(s.is_active for s in db.query(PushSubscription).all())


def test_slot_claimed_by_overlapping_run_is_not_delivered(db, reminder_user):
    user, rv = reminder_user()
    db.add(NotificationHistory(
        user_id=user.id,
        routine_id=rv.routine_id,
        slot_date="2025-09-08",
        slot_time="08:00",
        delivery_status="pending",
    ))
    db.commit()

    class RacingScheduler(NotificationScheduler):
        # Existence check ran before the other run's claim was committed
        def already_notified(self, *args, **kwargs):
            return False

    sender = FakeSender()
    report = RacingScheduler(db, sender=sender).run(MONDAY_0745)

    assert sender.sent == []
    assert [(o.status, o.reason) for o in report.outcomes] == [("duplicate", "unique_constraint")]
    assert report.notifications_sent == 0


def test_slot_is_claimed_before_delivery(db, reminder_user):
    gone = "https://push.example/gone"
    ok = "https://push.example/ok"
    user, rv = reminder_user(endpoints=(gone, ok))
    competing = []

    class CompetingSender(FakeSender):
        def send(self, sub, payload):
            # A second run tries to record the same slot while we deliver
            if not competing:
                other = SessionLocal()
                try:
                    other.add(NotificationHistory(
                        user_id=user.id,
                        routine_id=rv.routine_id,
                        slot_date="2025-09-08",
                        slot_time="08:00",
                        delivery_status="pending",
                    ))
                    with pytest.raises(IntegrityError):
                        other.commit()
                    other.rollback()
                    competing.append(True)
                finally:
                    other.close()
            return super().send(sub, payload)

    sender = CompetingSender(gone_endpoints=[gone])
    report = run_routine_notifications(db, sender=sender, now=MONDAY_0745)

    assert competing == [True]
    assert [(o.status, o.delivered, o.total) for o in report.outcomes] == [("sent", 1, 2)]
    db.expire_all()
    history = db.query(NotificationHistory).one()
    assert history.delivery_status == "sent"
    assert history.delivery_details["failed_deliveries"] == 1
    states = {s.endpoint: s.is_active for s in db.query(PushSubscription).all()}
    assert states == {gone: False, ok: True}


def test_reminder_minutes_zero_means_default():
    from mhealth_core.notifications import reminder_minutes
    assert reminder_minutes(0) == 15
    assert reminder_minutes(None) == 15
    assert reminder_minutes(-5) == 5
