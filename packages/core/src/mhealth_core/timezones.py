"""User timezone resolution.

Users without a stored timezone are treated as living in ``DEFAULT_TIMEZONE``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from mhealth_core.models import Profile

logger = logging.getLogger("mhealth_core.timezones")

DEFAULT_TIMEZONE = "Europe/Stockholm"


def is_valid_timezone(name: Optional[str]) -> bool:
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def resolve_timezone(name: Optional[str], default: str = DEFAULT_TIMEZONE) -> str:
    """Return ``name`` when it is a known IANA zone, else ``default``."""
    if not name:
        return default
    if not is_valid_timezone(name):
        logger.warning("timezone.invalid name=%s fallback=%s", name, default)
        return default
    return name


def get_user_timezone(db: Session, user_id: int, default: str = DEFAULT_TIMEZONE) -> str:
    profile = db.get(Profile, user_id)
    return resolve_timezone(profile.timezone if profile else None, default=default)


def local_now(tz_name: str, now: Optional[datetime] = None) -> datetime:
    """``now`` (aware, any zone; defaults to the current instant) in ``tz_name``."""
    instant = now or datetime.now(timezone.utc)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(ZoneInfo(tz_name))


__all__ = ["DEFAULT_TIMEZONE", "is_valid_timezone", "resolve_timezone", "get_user_timezone", "local_now"]
