"""Date parsing for billing facts and configuration dates."""

from __future__ import annotations

from datetime import datetime, timezone

# Sensible bounds for episode, claim and authorization dates
MIN_VALID_YEAR = 1900
MAX_VALID_YEAR = 2100

_DATE_FORMATS = (
    "%Y-%m-%d",  # ISO 8601 date
    "%m/%d/%Y",  # US format
    "%Y%m%d",  # Compact
)


def _in_bounds(parsed: datetime) -> bool:
    return MIN_VALID_YEAR <= parsed.year <= MAX_VALID_YEAR


def parse_flexible_date(date_str: str | None) -> datetime | None:
    """Parse a date or timestamp from the formats billing sources send.

    Supports:
    - ISO 8601 timestamps, with or without offset (``2024-01-15T09:30:00Z``)
    - ISO 8601 dates (``2024-01-15``)
    - US format (``01/15/2024``)
    - Compact (``20240115``)

    Timestamps without an offset and plain dates are returned in UTC.

    Returns:
        Timezone-aware datetime, or None if the input is empty, unparseable,
        not a real calendar date, or outside 1900-2100

    Examples:
        >>> parse_flexible_date("01/15/2024")
        datetime.datetime(2024, 1, 15, 0, 0, tzinfo=datetime.timezone.utc)
        >>> parse_flexible_date("2024-02-30") is None
        True
    """
    if not date_str:
        return None
    text = date_str.strip()

    for fmt in _DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return parsed.replace(tzinfo=timezone.utc) if _in_bounds(parsed) else None

    if "T" in text or " " in text:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed if _in_bounds(parsed) else None

    return None
