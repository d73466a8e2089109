"""Routine schedule matching.

A routine variable carries a set of ISO weekdays (1 = Monday .. 7 = Sunday)
and an ordered list of ``{"time": "HH:MM"}`` entries. ``match_slot`` decides
whether a local instant hits one of those slots.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, List, Optional, Set

logger = logging.getLogger("mhealth_core.routines")


@dataclass(frozen=True)
class SlotMatch:
    slot_local: datetime  # scheduled wall-clock instant in the user's zone
    label: str            # "HH:MM"

    @property
    def slot_date(self) -> str:
        return self.slot_local.date().isoformat()


def parse_hhmm(value: str) -> int:
    """Parse ``"HH:MM"`` (seconds tolerated) into minutes since midnight."""
    if not isinstance(value, str):
        raise ValueError(f"time must be a string, got {type(value).__name__}")
    parts = value.strip().split(":")
    if len(parts) < 2:
        raise ValueError(f"invalid time {value!r}")
    h, m = int(parts[0]), int(parts[1])
    if not (0 <= h < 24 and 0 <= m < 60):
        raise ValueError(f"time out of range {value!r}")
    return h * 60 + m


def normalize_weekdays(raw: Optional[Iterable[Any]]) -> Set[int]:
    days: Set[int] = set()
    for d in raw or []:
        try:
            n = int(d)
        except (TypeError, ValueError):
            continue
        if 1 <= n <= 7:
            days.add(n)
    return days


def time_labels(raw: Optional[Iterable[Any]]) -> List[str]:
    """Extract time strings from stored entries, keeping order."""
    out: List[str] = []
    for entry in raw or []:
        value = entry.get("time") if isinstance(entry, dict) else entry
        if value:
            out.append(value)
    return out


def _slot_on(day: date, minutes: int, tzinfo) -> datetime:
    return datetime.combine(day, time(minutes // 60, minutes % 60), tzinfo=tzinfo)


def match_slot(
    weekdays: Optional[Iterable[Any]],
    times: Optional[Iterable[Any]],
    local_now: datetime,
    offset: timedelta = timedelta(0),
    tolerance_minutes: int = 0,
) -> Optional[SlotMatch]:
    """Return the first slot whose ``slot + offset`` lies within tolerance of now.

    Comparison happens at minute resolution on wall-clock time. Slots on the
    previous and next local day are considered so offsets and tolerances that
    cross midnight still match; each slot is checked against its own weekday.
    """
    days = normalize_weekdays(weekdays)
    if not days:
        return None
    now_minute = local_now.replace(second=0, microsecond=0)
    tolerance = timedelta(minutes=max(0, tolerance_minutes))
    today = now_minute.date()
    for label in time_labels(times):
        try:
            minutes = parse_hhmm(label)
        except ValueError as e:
            logger.debug("routine.time skip value=%r reason=%s", label, e)
            continue
        for day_offset in (0, -1, 1):
            day = today + timedelta(days=day_offset)
            if day.isoweekday() not in days:
                continue
            slot = _slot_on(day, minutes, now_minute.tzinfo)
            target = (slot + offset).replace(tzinfo=None)
            if abs(now_minute.replace(tzinfo=None) - target) <= tolerance:
                return SlotMatch(slot_local=slot, label=f"{minutes // 60:02d}:{minutes % 60:02d}")
    return None


__all__ = ["SlotMatch", "parse_hhmm", "normalize_weekdays", "time_labels", "match_slot"]
