"""
SiriusTrack — Calendar date helpers.

Every engine receives its reference date as an explicit ISO string. The only
place the system clock is consulted is `today_in()`, called by the command
layer and the entry point.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from siriustrack.core.errors import ValidationError


def parse_iso_date(value: str, field_name: str = "date") -> date:
    """Parse a YYYY-MM-DD string, raising ValidationError on anything else."""
    if not isinstance(value, str) or len(value) != 10:
        raise ValidationError(f"{field_name} must be a YYYY-MM-DD string, got {value!r}")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"{field_name} is not a valid date: {value!r}") from exc


def shift_days(value: str, days: int) -> str:
    """Return the ISO date `days` away from `value` (negative = earlier)."""
    return (parse_iso_date(value) + timedelta(days=days)).isoformat()


def today_in(timezone: str) -> str:
    """Today's calendar date in the given IANA zone, as YYYY-MM-DD."""
    return datetime.now(ZoneInfo(timezone)).date().isoformat()


def now_in(timezone: str) -> str:
    """Current wall-clock timestamp in the given zone, ISO-8601."""
    return datetime.now(ZoneInfo(timezone)).isoformat(timespec="seconds")
