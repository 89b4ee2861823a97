"""Timezone helpers.

Timestamps are stored as naive UTC. Everything a user sees, and every
calendar-day comparison made on their behalf, goes through the user's IANA
timezone instead of the process clock.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

COMMON_TIMEZONES: list[dict[str, str]] = [
    {"value": "UTC", "label": "UTC (Coordinated Universal Time)"},
    {"value": "America/New_York", "label": "Eastern Time (ET)"},
    {"value": "America/Chicago", "label": "Central Time (CT)"},
    {"value": "America/Denver", "label": "Mountain Time (MT)"},
    {"value": "America/Los_Angeles", "label": "Pacific Time (PT)"},
    {"value": "Europe/London", "label": "London (GMT/BST)"},
    {"value": "Europe/Paris", "label": "Paris (CET/CEST)"},
    {"value": "Europe/Berlin", "label": "Berlin (CET/CEST)"},
    {"value": "Asia/Tokyo", "label": "Tokyo (JST)"},
    {"value": "Asia/Kolkata", "label": "India (IST)"},
    {"value": "Asia/Shanghai", "label": "Shanghai (CST)"},
    {"value": "Asia/Singapore", "label": "Singapore (SGT)"},
    {"value": "Australia/Sydney", "label": "Sydney (AEDT/AEST)"},
    {"value": "Australia/Melbourne", "label": "Melbourne (AEDT/AEST)"},
    {"value": "Pacific/Auckland", "label": "Auckland (NZDT/NZST)"},
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_valid_timezone(name: object) -> bool:
    if not isinstance(name, str) or not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    """Return the zone for ``name``, falling back to UTC when it is unknown."""
    if name and is_valid_timezone(name):
        return ZoneInfo(name)
    if name:
        logger.warning(f"timezone_fallback: requested={name!r} using=UTC")
    return ZoneInfo("UTC")


def now_in(name: Optional[str], *, now: Optional[datetime] = None) -> datetime:
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(resolve_timezone(name))


def current_time_iso(name: Optional[str], *, now: Optional[datetime] = None) -> str:
    return now_in(name, now=now).replace(microsecond=0).isoformat()


def local_date(stored_utc: datetime, name: Optional[str]) -> date:
    """Calendar date of a stored naive-UTC timestamp, as seen in ``name``."""
    return stored_utc.replace(tzinfo=timezone.utc).astimezone(resolve_timezone(name)).date()


def to_utc_naive(value: datetime, name: Optional[str]) -> datetime:
    """Normalize an incoming timestamp for storage.

    Aware values are converted to UTC. Naive values are wall-clock times in
    the user's timezone.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=resolve_timezone(name))
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def isoformat_utc(stored_utc: datetime) -> str:
    return stored_utc.replace(tzinfo=timezone.utc).isoformat()


def format_in_timezone(stored_utc: datetime, name: Optional[str], fmt: str = "PPp") -> str:
    local = stored_utc.replace(tzinfo=timezone.utc).astimezone(resolve_timezone(name))
    short_date = f"{local:%b} {local.day}, {local.year}"
    if fmt == "PP":
        return short_date
    if fmt == "PPP":
        return f"{local:%B} {local.day}, {local.year}"
    hour12 = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    time_part = f"{hour12}:{local.minute:02d} {meridiem}"
    if fmt == "PPp":
        return f"{short_date} at {time_part}"
    return f"{short_date}, {time_part}"
