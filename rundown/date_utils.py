"""Shared date normalization and lookback-window helpers."""
from __future__ import annotations

import math
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y/%m/%d", "%m/%d/%Y", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def parse_datetime(value: Any) -> datetime | None:
    """Parse mixed date inputs into an aware UTC datetime (None when unparseable)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        if _DATE_ONLY_RE.match(token):
            try:
                parsed = date.fromisoformat(token)
            except ValueError:
                return None
            return datetime(parsed.year, parsed.month, parsed.day, tzinfo=timezone.utc)
        parsed_dt = _parse_datetime_token(token)
        return _as_utc(parsed_dt) if parsed_dt else None
    return None


def normalize_iso_date(value: Any) -> str:
    """Convert mixed date inputs into comparable ISO strings."""
    parsed = parse_datetime(value)
    if parsed is None:
        return ""
    return parsed.isoformat()


def resolve_cutoff(since: str | None, now: datetime, lookback_days: int) -> datetime:
    """Return the start of the lookback window.

    ``since`` wins when given; otherwise the window is ``lookback_days`` back from ``now``.
    Raises ``ValueError`` when ``since`` is present but cannot be parsed.
    """
    if since:
        parsed = parse_datetime(since)
        if parsed is None:
            raise ValueError(f"Invalid since date: {since!r}")
        return parsed
    return _as_utc(now) - timedelta(days=lookback_days)


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from ``start`` to ``end``, rounded up (never negative)."""
    seconds = (_as_utc(end) - _as_utc(start)).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def date_only(value: Any) -> str:
    parsed = parse_datetime(value)
    return parsed.date().isoformat() if parsed else ""
