"""Web push delivery through pywebpush (VAPID)."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pywebpush import WebPushException, webpush
from requests.exceptions import RequestException

from mhealth_core.config import Settings
from mhealth_core.models import PushSubscription

logger = logging.getLogger("mhealth_core.push")

# Push services answer these for subscriptions that no longer exist
GONE_STATUSES = (404, 410)


@dataclass
class PushResult:
    subscription_id: int
    success: bool
    error: Optional[str] = None
    should_deactivate: bool = False


def subscription_info(sub: PushSubscription) -> Dict[str, Any]:
    return {"endpoint": sub.endpoint, "keys": {"p256dh": sub.p256dh_key, "auth": sub.auth_key}}


class WebPushSender:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()

    @property
    def configured(self) -> bool:
        return self.settings.push_configured

    def send(self, sub: PushSubscription, payload: Dict[str, Any]) -> PushResult:
        if not self.configured:
            return PushResult(sub.id, False, error="VAPID keys not configured")
        try:
            webpush(
                subscription_info=subscription_info(sub),
                data=json.dumps(payload),
                vapid_private_key=self.settings.vapid_private_key,
                vapid_claims={"sub": self.settings.vapid_subject},
                headers={"Urgency": "high"},
            )
        except WebPushException as exc:
            status = exc.response.status_code if exc.response is not None else None
            body = exc.response.text if exc.response is not None else ""
            gone = status in GONE_STATUSES or (status == 400 and "expired" in (body or ""))
            logger.warning("push.send failed sub=%s status=%s gone=%s", sub.id, status, gone)
            return PushResult(sub.id, False, error=str(exc), should_deactivate=gone)
        except RequestException as exc:
            # Unreachable endpoint or timeout; the subscription stays active
            logger.warning("push.send network error sub=%s err=%s", sub.id, exc)
            return PushResult(sub.id, False, error=f"{exc.__class__.__name__}: {exc}")
        logger.debug("push.send ok sub=%s", sub.id)
        return PushResult(sub.id, True)


__all__ = ["PushResult", "WebPushSender", "subscription_info", "GONE_STATUSES"]
