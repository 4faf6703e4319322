"""Cron expression parsing on top of APScheduler's CronTrigger."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from .errors import SchedulingError

# Crontab numbers Sunday as 0 (or 7); APScheduler numbers Monday as 0.
_CRON_WEEKDAYS = {
    "0": "sun",
    "1": "mon",
    "2": "tue",
    "3": "wed",
    "4": "thu",
    "5": "fri",
    "6": "sat",
    "7": "sun",
}
_RANGE = re.compile(r"^(\d)-(\d)$")
_DAY_NUMBERS = {name: int(number) for number, name in _CRON_WEEKDAYS.items() if number != "7"}
_ONE_SECOND = timedelta(seconds=1)


def _day_number(token: str) -> int:
    if token.isdigit() and int(token) <= 7:
        return int(token)
    number = _DAY_NUMBERS.get(token.lower())
    if number is None:
        raise ValueError(f"Invalid day of week: {token}")
    return number


def _expand_step(item: str) -> list[str]:
    """Expand a stepped item such as ``1-5/2`` or ``*/2`` into day names."""
    base, _, step_text = item.partition("/")
    if not step_text.isdigit() or int(step_text) == 0:
        raise ValueError(f"Invalid step in day of week: {item}")
    if base == "*":
        start, end = 0, 6
    elif "-" in base:
        first, _, last = base.partition("-")
        start, end = _day_number(first), _day_number(last)
    else:
        start, end = _day_number(base), 6
    if end < start:
        raise ValueError(f"Invalid day of week range: {item}")
    return [_CRON_WEEKDAYS[str(day)] for day in range(start, end + 1, int(step_text))]


def _translate_day_of_week(field: str) -> str:
    parts = []
    for item in field.split(","):
        if "/" in item:
            parts.extend(_expand_step(item))
            continue
        match = _RANGE.match(item)
        if match:
            start, end = match.groups()
            if start in ("0", "7"):
                # sun-X is not a valid APScheduler range; split it.
                parts.append("sun")
                if end not in ("0", "7"):
                    parts.append(f"mon-{_CRON_WEEKDAYS[end]}" if end != "1" else "mon")
                continue
            if end in ("0", "7"):
                parts.append(f"{_CRON_WEEKDAYS[start]}-sat")
                parts.append("sun")
                continue
            parts.append(f"{_CRON_WEEKDAYS[start]}-{_CRON_WEEKDAYS[end]}")
        else:
            parts.append(_CRON_WEEKDAYS.get(item, item))
    return ",".join(parts)


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Resolve an IANA timezone name.

    Raises:
        SchedulingError: If the name is unknown.
    """
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise SchedulingError(f"Unknown timezone: {name}") from e


def parse_cron(cron_expression: str, tz: str | None = "UTC") -> CronTrigger:
    """Parse a cron expression into an APScheduler trigger.

    Args:
        cron_expression: Standard cron format (minute hour day month day_of_week),
            optionally with a leading seconds field
        tz: IANA timezone the expression is interpreted in

    Returns:
        CronTrigger instance

    Raises:
        SchedulingError: If the expression or timezone is invalid
    """
    zone = resolve_timezone(tz)
    parts = (cron_expression or "").strip().split()

    try:
        if len(parts) == 5:
            return CronTrigger(
                minute=parts[0],
                hour=parts[1],
                day=parts[2],
                month=parts[3],
                day_of_week=_translate_day_of_week(parts[4]),
                timezone=zone,
            )
        if len(parts) == 6:
            return CronTrigger(
                second=parts[0],
                minute=parts[1],
                hour=parts[2],
                day=parts[3],
                month=parts[4],
                day_of_week=_translate_day_of_week(parts[5]),
                timezone=zone,
            )
    except ValueError as e:
        raise SchedulingError(f"Invalid cron expression '{cron_expression}': {e}") from e

    raise SchedulingError(
        f"Invalid cron expression: {cron_expression}. "
        "Expected 5 or 6 space-separated fields."
    )


def next_fire_time(cron_expression: str, tz: str | None, after: datetime) -> datetime:
    """Next firing strictly after ``after``, returned in UTC.

    Raises:
        SchedulingError: If the expression never fires again or is invalid.
    """
    trigger = parse_cron(cron_expression, tz)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    # CronTrigger returns fire times >= now; start from the next whole second.
    candidate = trigger.get_next_fire_time(None, after.replace(microsecond=0) + _ONE_SECOND)
    if candidate is None:
        raise SchedulingError(f"Cron expression never fires: {cron_expression}")
    return candidate.astimezone(timezone.utc)


def cron_error(cron_expression: str, tz: str | None) -> str | None:
    """Validation helper: error message or None."""
    try:
        parse_cron(cron_expression, tz)
    except SchedulingError as e:
        return str(e)
    return None
