"""
Timezone-aware datetime utilities.

All datetime operations should use these helpers to ensure consistent
timezone handling across the codebase. Stored timestamps are UTC; only
text rendered for people (stamps, evidence reports) uses Brazilian time.
"""
from datetime import datetime, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

DISPLAY_TIMEZONE = ZoneInfo("America/Sao_Paulo")
DISPLAY_FORMAT = "%d/%m/%Y %H:%M:%S"


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def parse_db_timestamp(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """
    Parse timestamp from database or provider payload, ensuring timezone-aware UTC.

    Handles:
    - ISO format strings with Z suffix
    - ISO format strings with an offset
    - Naive datetimes (assumed UTC)
    - Already timezone-aware datetimes

    Returns:
        Timezone-aware datetime in UTC, or None if input is None/empty/unparseable
    """
    if value is None:
        return None

    if isinstance(value, str):
        if not value:
            return None
        value = value.replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
    elif isinstance(value, datetime):
        dt = value
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """ISO string accepted by PostgREST timestamptz columns."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def format_display_datetime(value: Optional[Union[str, datetime]]) -> str:
    """Render a timestamp as dd/mm/yyyy HH:MM:SS in Sao Paulo time, '-' when missing."""
    dt = parse_db_timestamp(value)
    if dt is None:
        return "-"
    return dt.astimezone(DISPLAY_TIMEZONE).strftime(DISPLAY_FORMAT)


def path_timestamp(value: Optional[datetime] = None) -> str:
    """Millisecond epoch used to keep re-uploaded blob names unique."""
    dt = value or utc_now()
    return str(int(dt.timestamp() * 1000))
