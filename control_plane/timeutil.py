"""Timestamp helpers. All control plane timestamps are timezone-aware UTC."""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    """RFC3339 with microseconds, UTC, 'Z' suffix."""
    if value is None:
        return None
    return to_utc(value).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC3339 / ISO-8601 timestamp; empty values yield None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    raw = str(value).strip()
    if not raw:
        return None
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    # Trim nanosecond precision to what datetime can hold
    if "." in raw:
        head, _, tail = raw.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if ch.isdigit():
                digits += ch
            else:
                rest = tail[i:]
                break
        raw = f"{head}.{digits[:6].ljust(6, '0')}{rest}" if digits else f"{head}{rest}"
    return to_utc(datetime.fromisoformat(raw))
