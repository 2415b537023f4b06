from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_iso(dt: datetime) -> str:
    """
    Canonical stored timestamp: UTC, second precision, "Z" suffix.

    Every timestamp in the table uses this shape so lexicographic order in
    sort keys equals chronological order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def now_iso() -> str:
    return to_iso(utcnow())


def parse_iso(value: Any) -> datetime | None:
    """
    Parse an ISO date or datetime (naive values are taken as UTC).

    Returns None for empty input; raises ValueError for garbage.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        s = str(value).strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_iso(value: Any) -> str | None:
    dt = parse_iso(value)
    return to_iso(dt) if dt else None
