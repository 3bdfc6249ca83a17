from __future__ import annotations

from datetime import datetime, timezone
from typing import Union

from dateutil import parser as date_parser


def ensure_aware(value: datetime) -> datetime:
    # Naive timestamps are treated as UTC so they compare against portal timestamps.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """
    Parse portal/state timestamps like:
    - "2023-01-02T15:04:05.000Z"
    - "2023-01-02T10:04:05-05:00"
    - "2023-01-02"
    """
    if value is None:
        raise ValueError("parse_timestamp: value is None")
    if isinstance(value, datetime):
        return ensure_aware(value)
    s = str(value).strip()
    if not s:
        raise ValueError("parse_timestamp: empty string")
    return ensure_aware(date_parser.isoparse(s))


def format_timestamp(value: datetime) -> str:
    """Serialize as UTC ISO-8601 with millisecond precision and a trailing Z."""
    utc = ensure_aware(value).astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
