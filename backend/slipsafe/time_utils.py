from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical). Every stored timestamp comes from here."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def window_start(minutes: int, now: Optional[datetime] = None) -> datetime:
    """Start of a trailing window ending at `now`."""
    return (now or utcnow()) - timedelta(minutes=minutes)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a query-string timestamp into a UTC-naive datetime.

    Blank means no filter. Naive input is taken as UTC; a trailing "Z" or
    an explicit offset is converted. Raises ValueError on garbage.
    """
    text = (value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def is_calendar_date(value: Optional[str]) -> bool:
    """True for a real YYYY-MM-DD date ("2026-02-30" is rejected)."""
    if not value or len(value) != 10:
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 to the second with a trailing 'Z'; naive values are UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.replace(microsecond=0).isoformat() + "Z"


def cents_to_str(cents: Optional[int]) -> Optional[str]:
    """Render integer cents as a fixed two-decimal string ("150.00")."""
    if cents is None:
        return None
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{whole}.{frac:02d}"
