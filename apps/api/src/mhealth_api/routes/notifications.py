from fastapi import APIRouter, Depends, HTTPException
import logging
from pydantic import BaseModel
from typing import Any, Dict, Literal, Optional
from sqlalchemy.orm import Session
from mhealth_core.auth import current_user, get_db
from mhealth_core.config import Settings
from mhealth_core.models import NotificationPreference, PushSubscription, utcnow_naive
from mhealth_core.errors import NoSubscriptionsError
from mhealth_core.notifications import DEFAULT_REMINDER_MINUTES, send_to_user
from ..deps import get_push_sender, get_settings

router = APIRouter(prefix="/notifications", tags=["notifications"])
log = logging.getLogger("mhealth_api")


class PreferencesRequest(BaseModel):
    routine_reminder_enabled: Optional[bool] = None
    routine_reminder_minutes: Optional[int] = None
    routine_notification_timing: Optional[Literal["before", "at_time", "after"]] = None


class SubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class SubscriptionRequest(BaseModel):
    endpoint: str
    keys: SubscriptionKeys
    user_agent: Optional[str] = None


class SendRequest(BaseModel):
    title: str
    body: str
    url: str = "/"
    tag: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    notification_type: str = "manual"


def preferences_out(pref: Optional[NotificationPreference]) -> dict:
    if pref is None:
        return {
            "routine_reminder_enabled": False,
            "routine_reminder_minutes": DEFAULT_REMINDER_MINUTES,
            "routine_notification_timing": "before",
        }
    return {
        "routine_reminder_enabled": pref.routine_reminder_enabled,
        "routine_reminder_minutes": pref.routine_reminder_minutes,
        "routine_notification_timing": pref.routine_notification_timing,
    }


def subscription_out(sub: PushSubscription) -> dict:
    return {
        "id": sub.id,
        "endpoint": sub.endpoint,
        "user_agent": sub.user_agent,
        "is_active": sub.is_active,
        "last_used_at": sub.last_used_at.isoformat() + "Z" if sub.last_used_at else None,
    }


@router.get("/vapid-public-key")
def vapid_public_key(settings: Settings = Depends(get_settings)):
    if not settings.vapid_public_key:
        raise HTTPException(status_code=503, detail="VAPID keys not configured")
    return {"public_key": settings.vapid_public_key}


@router.get("/preferences")
def get_preferences(user = Depends(current_user), db: Session = Depends(get_db)):
    pref = db.query(NotificationPreference).filter(NotificationPreference.user_id == user.id).first()
    return preferences_out(pref)


@router.put("/preferences")
def update_preferences(data: PreferencesRequest, user = Depends(current_user), db: Session = Depends(get_db)):
    pref = db.query(NotificationPreference).filter(NotificationPreference.user_id == user.id).first()
    if pref is None:
        pref = NotificationPreference(
            user_id=user.id,
            routine_reminder_enabled=False,
            routine_reminder_minutes=DEFAULT_REMINDER_MINUTES,
            routine_notification_timing="before",
        )
        db.add(pref)
    if data.routine_reminder_enabled is not None:
        pref.routine_reminder_enabled = data.routine_reminder_enabled
    if data.routine_reminder_minutes is not None:
        if data.routine_reminder_minutes < 1 or data.routine_reminder_minutes > 24 * 60:
            raise HTTPException(status_code=400, detail="routine_reminder_minutes must be 1-1440")
        pref.routine_reminder_minutes = data.routine_reminder_minutes
    if data.routine_notification_timing is not None:
        pref.routine_notification_timing = data.routine_notification_timing
    db.commit()
    db.refresh(pref)
    log.info(
        "notifications.preferences enabled=%s timing=%s minutes=%s actor=%s",
        pref.routine_reminder_enabled,
        pref.routine_notification_timing,
        pref.routine_reminder_minutes,
        user.username,
    )
    return preferences_out(pref)


@router.post("/subscriptions")
def subscribe(data: SubscriptionRequest, user = Depends(current_user), db: Session = Depends(get_db)):
    sub = (
        db.query(PushSubscription)
        .filter(PushSubscription.user_id == user.id, PushSubscription.endpoint == data.endpoint)
        .first()
    )
    if sub is None:
        sub = PushSubscription(user_id=user.id, endpoint=data.endpoint)
        db.add(sub)
    sub.p256dh_key = data.keys.p256dh
    sub.auth_key = data.keys.auth
    sub.user_agent = data.user_agent
    sub.is_active = True
    sub.last_used_at = utcnow_naive()
    db.commit()
    db.refresh(sub)
    log.info("notifications.subscribe id=%s actor=%s", sub.id, user.username)
    return {"success": True, "subscription_id": sub.id}


@router.get("/subscriptions")
def list_subscriptions(user = Depends(current_user), db: Session = Depends(get_db)):
    subs = db.query(PushSubscription).filter(PushSubscription.user_id == user.id).order_by(PushSubscription.id).all()
    return [subscription_out(s) for s in subs]


@router.delete("/subscriptions")
def unsubscribe(endpoint: str, user = Depends(current_user), db: Session = Depends(get_db)):
    sub = (
        db.query(PushSubscription)
        .filter(PushSubscription.user_id == user.id, PushSubscription.endpoint == endpoint)
        .first()
    )
    if sub is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    sub.is_active = False
    db.commit()
    log.info("notifications.unsubscribe id=%s actor=%s", sub.id, user.username)
    return {"success": True}


@router.post("/send")
def send_notification(
    data: SendRequest,
    user = Depends(current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    sender = Depends(get_push_sender),
):
    """Push an ad-hoc (e.g. test) notification to the caller's own devices."""
    try:
        return send_to_user(
            db,
            user.id,
            data.title,
            data.body,
            sender=sender,
            url=data.url,
            tag=data.tag,
            data=data.data,
            notification_type=data.notification_type,
            settings=settings,
        )
    except NoSubscriptionsError:
        raise HTTPException(status_code=404, detail="No active push subscriptions found")
