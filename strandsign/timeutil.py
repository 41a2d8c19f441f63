"""Time helpers. All timestamps are timezone-aware UTC and serialized as RFC 3339."""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_rfc3339(dt: datetime) -> str:
    """Serialize an aware datetime as an RFC 3339 UTC string with millisecond precision."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def now_rfc3339() -> str:
    return to_rfc3339(utc_now())


def parse_rfc3339(value: str) -> datetime:
    """
    Parse an RFC 3339 / ISO 8601 timestamp.

    A trailing "Z" is accepted, naive values are taken as UTC.
    """
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_optional(value: Optional[str]) -> Optional[datetime]:
    return parse_rfc3339(value) if value else None
