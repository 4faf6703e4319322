"""APScheduler wrapper that drives time-based triggers.

One interval job scans scheduled triggers every tick and fires the ones
whose ``nextRun`` has elapsed; housekeeping callbacks (escalation
re-checks, deferred notification flushes) run on the same tick. A daily
cron job purges audit entries past their retention window.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from automation.audit import AuditEvent, AuditLog
from automation.cron import next_fire_time, parse_cron
from automation.errors import SchedulingError
from automation.facts import Fact, synthetic_fact
from automation.models import AuditLogLevel, AutomationConfig, Trigger
from automation.runtime import RuntimeState

from .business_hours import BusinessCalendar

logger = logging.getLogger(__name__)

TICK_JOB_ID = "automation_tick"
PURGE_JOB_ID = "audit_purge"
PURGE_SCHEDULE = "0 3 * * *"

FireTrigger = Callable[[Trigger, Fact, datetime], Any]
Housekeeping = Callable[[datetime], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerScheduler:
    """Scheduler for time-based triggers and periodic engine housekeeping."""

    def __init__(
        self,
        config: Callable[[], AutomationConfig],
        runtime: RuntimeState,
        fire: FireTrigger,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] | None = None,
        tick_seconds: float = 60,
        housekeeping: Sequence[Housekeeping] = (),
        purge: Callable[[], Any] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            config: Returns the active configuration snapshot
            runtime: Holds each trigger's computed next run
            fire: Submits a trigger firing; returns a truthy value if accepted
            audit: Receives schedule errors
            clock: Time source, UTC
            tick_seconds: Interval between scans
            housekeeping: Callbacks run after every scan with the tick time
            purge: Daily audit retention job
        """
        self._config = config
        self._runtime = runtime
        self._fire = fire
        self._audit = audit
        self._clock = clock or _utcnow
        self.tick_seconds = tick_seconds
        self._housekeeping = list(housekeeping)
        self._purge = purge
        self._scheduler: BackgroundScheduler | None = None
        self._started = False

    def _create_scheduler(self) -> BackgroundScheduler:
        executors = {"default": ThreadPoolExecutor(max_workers=2)}
        job_defaults = {
            "coalesce": True,  # Combine missed runs into one
            "max_instances": 1,  # Ticks never overlap
            "misfire_grace_time": 60,
        }
        return BackgroundScheduler(executors=executors, job_defaults=job_defaults, timezone="UTC")

    def start(self) -> None:
        if self._started:
            logger.warning("Scheduler already started")
            return

        self._scheduler = self._create_scheduler()
        self._scheduler.add_job(
            self._run_tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds, timezone="UTC"),
            id=TICK_JOB_ID,
            next_run_time=self._clock(),
            replace_existing=True,
        )
        if self._purge is not None:
            self._scheduler.add_job(
                self._run_purge,
                trigger=parse_cron(PURGE_SCHEDULE, "UTC"),
                id=PURGE_JOB_ID,
                replace_existing=True,
            )
        self._scheduler.start()
        self._started = True
        logger.info(f"Trigger scheduler started (tick every {self.tick_seconds}s)")

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False
            logger.info("Trigger scheduler shutdown")

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None

    def get_jobs(self) -> list[dict[str, Any]]:
        if not self._scheduler:
            return []
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        ]

    # --- jobs ---

    def _run_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            logger.exception("Scheduler tick failed")

    def _run_purge(self) -> None:
        try:
            self._purge()
        except Exception:
            logger.exception("Audit purge failed")

    def _disable(self, trigger: Trigger, error: SchedulingError) -> None:
        self._runtime.disable_schedule(trigger.id, str(error))
        logger.error(f"Disabled schedule for trigger {trigger.id}: {error}")
        if self._audit is not None:
            self._audit.record(
                AuditEvent.SCHEDULE_ERROR,
                level=AuditLogLevel.ERROR,
                resource_type="trigger",
                resource_id=trigger.id,
                details={
                    "expression": trigger.schedule.expression if trigger.schedule else None,
                    "timezone": trigger.schedule.timezone if trigger.schedule else None,
                },
                status="error",
                error_message=str(error),
            )

    def tick(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Fire every scheduled trigger whose next run has elapsed.

        Outside business hours (when ``businessHoursOnly`` is set) a due
        firing moves to the start of the next business window instead of
        being dropped.

        Returns:
            One entry per trigger that fired, was deferred or was rejected
        """
        now = now or self._clock()
        config = self._config()
        settings = config.config
        calendar: BusinessCalendar | None = None
        outcomes: list[dict[str, Any]] = []

        for trigger in config.triggers:
            schedule = trigger.schedule
            if not trigger.enabled or schedule is None or not schedule.enabled:
                continue
            state = self._runtime.schedule(trigger.id)
            if state.disabled_reason:
                continue

            try:
                if state.next_run is None:
                    state.next_run = schedule.next_run or next_fire_time(
                        schedule.expression, schedule.timezone, now
                    )
                if state.next_run > now:
                    continue

                if settings.business_hours_only:
                    if calendar is None:
                        calendar = BusinessCalendar(settings.business_hours, settings.holiday_schedule)
                    if not calendar.is_open(now):
                        opens = calendar.next_open(now)
                        if opens is None:
                            logger.warning(f"No business window ahead for trigger {trigger.id}")
                            continue
                        state.next_run = opens
                        logger.info(
                            f"Trigger {trigger.id} outside business hours; "
                            f"rescheduled to {opens.isoformat()}"
                        )
                        outcomes.append(
                            {"triggerId": trigger.id, "status": "deferred", "nextRun": opens.isoformat()}
                        )
                        continue

                accepted = self._fire(trigger, synthetic_fact(trigger.id, now), now)
                state.next_run = next_fire_time(schedule.expression, schedule.timezone, now)
                outcomes.append(
                    {
                        "triggerId": trigger.id,
                        "status": "fired" if accepted else "rejected",
                        "nextRun": state.next_run.isoformat(),
                    }
                )
            except SchedulingError as e:
                self._disable(trigger, e)

        for job in self._housekeeping:
            try:
                job(now)
            except Exception:
                logger.exception(f"Housekeeping job {getattr(job, '__name__', job)} failed")
        return outcomes
