"""Business-hours and holiday gating for scheduled trigger firings."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

from automation.cron import resolve_timezone
from automation.models import BusinessHours

# Longest stretch searched for the next open window.
SEARCH_DAYS = 14


def _clock_time(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class BusinessCalendar:
    """Open/closed windows from weekly hours plus a holiday list."""

    def __init__(self, hours: BusinessHours, holidays: list[str] | None = None) -> None:
        self.hours = hours
        self.zone = resolve_timezone(hours.timezone)
        self.holidays = {date.fromisoformat(day) for day in holidays or []}

    def _window(self, day: date) -> tuple[datetime, datetime] | None:
        if day in self.holidays:
            return None
        hours = self.hours.for_weekday(day.weekday())
        if not hours.enabled:
            return None
        start = datetime.combine(day, _clock_time(hours.start), tzinfo=self.zone)
        end = datetime.combine(day, _clock_time(hours.end), tzinfo=self.zone)
        if start >= end:
            return None
        return start, end

    def is_open(self, moment: datetime) -> bool:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        local = moment.astimezone(self.zone)
        window = self._window(local.date())
        return window is not None and window[0] <= local < window[1]

    def next_open(self, moment: datetime) -> datetime | None:
        """Earliest moment at or after ``moment`` inside a business window, in UTC.

        Returns None when no window opens within ``SEARCH_DAYS``.
        """
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        local = moment.astimezone(self.zone)
        for offset in range(SEARCH_DAYS + 1):
            window = self._window(local.date() + timedelta(days=offset))
            if window is None:
                continue
            start, end = window
            if local < start:
                return start.astimezone(timezone.utc)
            if local < end:
                return moment.astimezone(timezone.utc)
        return None
