"""Tests for cron parsing, business-hours gating and the trigger scheduler."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from automation.cron import cron_error, next_fire_time, parse_cron, resolve_timezone
from automation.errors import SchedulingError
from automation.models import AutomationConfig, BusinessHours
from automation.runtime import RuntimeState
from scheduler import BusinessCalendar, TriggerScheduler


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# Wednesday, 11:00 in New York
START = _utc(2024, 7, 10, 15, 0)


class TestCron:
    """Cron expressions evaluated in their schedule's timezone."""

    def test_next_fire_in_schedule_timezone(self):
        """8 AM in New York is noon UTC during daylight saving time."""
        assert next_fire_time("0 8 * * *", "America/New_York", START) == _utc(2024, 7, 11, 12, 0)

    def test_next_fire_is_strictly_after(self):
        fired = _utc(2024, 7, 11, 12, 0)
        assert next_fire_time("0 8 * * *", "America/New_York", fired) == _utc(2024, 7, 12, 12, 0)

    def test_crontab_weekday_numbering(self):
        """0 is Sunday and 1-5 is Monday through Friday."""
        friday_late = _utc(2024, 7, 12, 10, 0)
        assert next_fire_time("0 9 * * 1-5", "UTC", friday_late) == _utc(2024, 7, 15, 9, 0)
        assert next_fire_time("0 9 * * 0", "UTC", friday_late) == _utc(2024, 7, 14, 9, 0)
        assert next_fire_time("0 9 * * 0-2", "UTC", friday_late) == _utc(2024, 7, 14, 9, 0)
        assert next_fire_time("0 9 * * 7", "UTC", friday_late) == _utc(2024, 7, 14, 9, 0)

    @pytest.mark.parametrize(
        "day_of_week,expected",
        [
            # Monday, Wednesday and Friday
            ("1-5/2", _utc(2024, 7, 10, 9, 0)),
            ("mon-fri/2", _utc(2024, 7, 10, 9, 0)),
            # Sunday, Tuesday, Thursday and Saturday
            ("*/2", _utc(2024, 7, 11, 9, 0)),
            ("0-6/3", _utc(2024, 7, 10, 9, 0)),
            ("4/2", _utc(2024, 7, 11, 9, 0)),
            ("1,5/7", _utc(2024, 7, 12, 9, 0)),
        ],
    )
    def test_stepped_weekdays_use_crontab_numbering(self, day_of_week, expected):
        tuesday_noon = _utc(2024, 7, 9, 12, 0)
        assert next_fire_time(f"0 9 * * {day_of_week}", "UTC", tuesday_noon) == expected

    @pytest.mark.parametrize("day_of_week", ["5-1/2", "1-5/0", "1-9/2", "x/2"])
    def test_invalid_stepped_weekdays(self, day_of_week):
        with pytest.raises(SchedulingError):
            parse_cron(f"0 9 * * {day_of_week}")

    def test_six_field_expression_has_seconds(self):
        assert next_fire_time("30 0 8 * * *", "UTC", START) == _utc(2024, 7, 11, 8, 0, 30)

    def test_naive_datetime_is_utc(self):
        naive = datetime(2024, 7, 10, 15, 0)
        assert next_fire_time("0 * * * *", "UTC", naive) == _utc(2024, 7, 10, 16, 0)

    @pytest.mark.parametrize("expression", ["", "* * *", "61 * * * *", "0 25 * * *", "a b c d e"])
    def test_invalid_expressions(self, expression):
        with pytest.raises(SchedulingError):
            parse_cron(expression)

    def test_unknown_timezone(self):
        with pytest.raises(SchedulingError, match="Unknown timezone"):
            resolve_timezone("Mars/Olympus_Mons")
        assert "Unknown timezone" in cron_error("0 8 * * *", "Mars/Olympus_Mons")

    def test_cron_error_for_valid_expression(self):
        assert cron_error("*/15 8-17 * * 1-5", "America/New_York") is None


class TestBusinessCalendar:
    """Weekly hours plus holidays, in the calendar's own timezone."""

    @pytest.fixture
    def calendar(self, document) -> BusinessCalendar:
        settings = AutomationConfig.model_validate(document).config
        return BusinessCalendar(settings.business_hours, settings.holiday_schedule)

    def test_open_during_weekday_hours(self, calendar):
        assert calendar.is_open(START)
        assert calendar.next_open(START) == START

    def test_closed_after_hours(self, calendar):
        """18:00 in New York waits for 08:00 the next morning."""
        evening = _utc(2024, 7, 10, 22, 0)
        assert not calendar.is_open(evening)
        assert calendar.next_open(evening) == _utc(2024, 7, 11, 12, 0)

    def test_end_of_day_is_closed(self, calendar):
        assert not calendar.is_open(_utc(2024, 7, 10, 21, 0))
        assert calendar.is_open(_utc(2024, 7, 10, 20, 59))

    def test_weekend_rolls_to_monday(self, calendar):
        saturday = _utc(2024, 7, 13, 15, 0)
        assert not calendar.is_open(saturday)
        assert calendar.next_open(saturday) == _utc(2024, 7, 15, 12, 0)

    def test_holiday_is_closed(self, calendar):
        independence_day = _utc(2024, 7, 4, 15, 0)
        assert not calendar.is_open(independence_day)
        assert calendar.next_open(independence_day) == _utc(2024, 7, 5, 12, 0)

    def test_no_window_ahead(self):
        closed = {"enabled": False}
        hours = BusinessHours.model_validate(
            {
                day: closed
                for day in (
                    "monday",
                    "tuesday",
                    "wednesday",
                    "thursday",
                    "friday",
                    "saturday",
                    "sunday",
                )
            }
        )
        assert BusinessCalendar(hours).next_open(START) is None


class TestTriggerScheduler:
    """Scan behavior, driven by explicit tick times."""

    @pytest.fixture
    def fired(self) -> list:
        return []

    def _scheduler(self, document, fired, clock, **kwargs) -> TriggerScheduler:
        config = AutomationConfig.model_validate(document)

        def fire(trigger, fact, now):
            fired.append((trigger.id, fact, now))
            return True

        return TriggerScheduler(lambda: config, RuntimeState(), fire, clock=clock, **kwargs)

    def test_not_due_yet(self, document, fired, clock):
        scheduler = self._scheduler(document, fired, clock)
        assert scheduler.tick(START) == []
        assert fired == []

    def test_fires_when_due_and_computes_next_run(self, document, fired, clock):
        """A firing hands a synthetic time-based fact to the registry."""
        scheduler = self._scheduler(document, fired, clock)
        due = _utc(2024, 7, 11, 12, 0)

        outcomes = scheduler.tick(due)

        assert outcomes == [
            {
                "triggerId": "trigger_auth_expiry",
                "status": "fired",
                "nextRun": "2024-07-12T12:00:00+00:00",
            }
        ]
        ((trigger_id, fact, fired_at),) = fired
        assert trigger_id == "trigger_auth_expiry"
        assert fact.source == "scheduler"
        assert fired_at == due

        # The same tick time does not fire twice
        assert scheduler.tick(due) == []

    def test_outside_business_hours_defers_to_next_window(self, document, fired, clock):
        document["triggers"][1]["schedule"]["nextRun"] = "2024-07-13T12:00:00Z"
        scheduler = self._scheduler(document, fired, clock)

        outcomes = scheduler.tick(_utc(2024, 7, 13, 13, 0))
        assert outcomes == [
            {
                "triggerId": "trigger_auth_expiry",
                "status": "deferred",
                "nextRun": "2024-07-15T12:00:00+00:00",
            }
        ]
        assert fired == []

        outcomes = scheduler.tick(_utc(2024, 7, 15, 12, 0))
        assert outcomes[0]["status"] == "fired"
        assert len(fired) == 1

    def test_business_hours_only_off_fires_anytime(self, document, fired, clock):
        document["config"]["businessHoursOnly"] = False
        document["triggers"][1]["schedule"]["nextRun"] = "2024-07-13T12:00:00Z"
        scheduler = self._scheduler(document, fired, clock)

        outcomes = scheduler.tick(_utc(2024, 7, 13, 13, 0))
        assert outcomes[0]["status"] == "fired"

    def test_rejected_firing(self, document, clock):
        config = AutomationConfig.model_validate(document)
        scheduler = TriggerScheduler(
            lambda: config, RuntimeState(), lambda trigger, fact, now: None, clock=clock
        )
        outcomes = scheduler.tick(_utc(2024, 7, 11, 12, 0))
        assert outcomes[0]["status"] == "rejected"

    def test_invalid_schedule_is_disabled(self, document, fired, clock):
        """A schedule that cannot be evaluated is disabled and reported, never fired."""
        schedule = document["triggers"][1]["schedule"]
        schedule["expression"] = "every morning"
        schedule.pop("nextRun")
        config = AutomationConfig.model_validate(document)
        runtime = RuntimeState()
        audit = MagicMock()

        scheduler = TriggerScheduler(
            lambda: config, runtime, lambda *args: fired.append(args), audit=audit, clock=clock
        )
        assert scheduler.tick(START) == []
        assert "every morning" in runtime.disabled_triggers()["trigger_auth_expiry"]
        audit.record.assert_called_once()
        assert fired == []

        # Stays disabled on later ticks
        scheduler.tick(_utc(2024, 7, 20, 12, 0))
        audit.record.assert_called_once()

    def test_disabled_trigger_is_not_scanned(self, document, fired, clock):
        document["triggers"][1]["enabled"] = False
        scheduler = self._scheduler(document, fired, clock)
        assert scheduler.tick(_utc(2024, 7, 11, 12, 0)) == []

    def test_housekeeping_runs_every_tick(self, document, fired, clock):
        ticks = []
        scheduler = self._scheduler(document, fired, clock, housekeeping=[ticks.append])
        scheduler.tick(START)
        assert ticks == [START]

    def test_failing_housekeeping_does_not_stop_the_tick(self, document, fired, clock):
        def broken(now):
            raise RuntimeError("boom")

        ticks = []
        scheduler = self._scheduler(
            document, fired, clock, housekeeping=[broken, ticks.append]
        )
        scheduler.tick(START)
        assert ticks == [START]

    def test_start_registers_jobs(self, document, fired, clock):
        scheduler = self._scheduler(document, fired, clock, purge=lambda: None)
        scheduler.start()
        try:
            assert scheduler.is_running
            job_ids = {job["id"] for job in scheduler.get_jobs()}
            assert job_ids == {"automation_tick", "audit_purge"}
        finally:
            scheduler.shutdown(wait=False)
        assert not scheduler.is_running


class TestEngineScheduling:
    def test_scheduled_firing_is_queued(self, engine):
        outcomes = engine.scheduler.tick(_utc(2024, 7, 11, 12, 0))
        assert outcomes[0]["status"] == "fired"
        assert len(engine.queue) == 1

    def test_schedule_change_recomputes_next_run(self, engine, document):
        """Saving a new cron expression drops the previously computed next run."""
        engine.scheduler.tick(_utc(2024, 7, 11, 12, 0))
        assert engine.runtime.schedule("trigger_auth_expiry").next_run == _utc(2024, 7, 12, 12, 0)

        document["triggers"][1]["schedule"]["expression"] = "0 9 * * *"
        engine.save_configuration(document, "admin")

        assert engine.runtime.schedule("trigger_auth_expiry").next_run is None
        assert engine.config.trigger("trigger_auth_expiry").schedule.next_run is None
        outcomes = engine.scheduler.tick(_utc(2024, 7, 12, 12, 0))
        assert outcomes == []
        assert engine.runtime.schedule("trigger_auth_expiry").next_run == _utc(2024, 7, 12, 13, 0)
