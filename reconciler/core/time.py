from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Any) -> Optional[str]:
    """Normalise a provider timestamp to an ISO-8601 UTC string.

    Epoch seconds (int, float or digit string) are converted; strings that are
    already ISO pass through unchanged; empty values map to None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, (int, float)):
        return to_iso(datetime.fromtimestamp(int(value), tz=timezone.utc))
    if isinstance(value, str):
        s = value.strip()
        if s.isdigit():
            return to_iso(int(s))
        return s
    raise ValueError(f"Not a timestamp: {value!r}")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
