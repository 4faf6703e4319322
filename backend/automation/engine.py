"""Billing automation engine: composition root for the automation package.

The engine owns one instance of every component, wires them through the
configuration store's current snapshot and exposes the operations the
HTTP routes call. Producers (fact ingestion, the scheduler, threshold
escalation, dead-letter replay) all feed the same execution queue.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

import httpx

from scheduler import TriggerScheduler, WorkerPool

from .actions import ActionDispatcher
from .audit import AuditEvent, AuditLog
from .business_rules import BusinessRuleEngine, RuleEvaluation
from .conditions import trace_conditions
from .dead_letter import DeadLetterStatus, DeadLetterStore
from .errors import ConfigValidationError
from .escalation import EscalationManager
from .execution_queue import ExecutionQueue, ExecutionRequest, RequestOrigin
from .executor import ChainExecutor, ChainOutcome, ChainStatus, cancelled_results
from .facts import Fact, FactCategory
from .models import (
    Action,
    AuditLogLevel,
    AutomationConfig,
    NotificationChannel,
    Priority,
    Trigger,
)
from .notifications import NotificationDispatcher, NotificationSender
from .registry import TriggerMatch, TriggerRegistry, build_request
from .retry import RetryExecutor
from .runtime import RuntimeState
from .services import Services
from .store import ConfigStore
from .thresholds import TaskBoard, TaskStatus, ThresholdCheckResult, ThresholdMonitor

logger = logging.getLogger(__name__)

CONFIG_CHANGED_NOTIFICATION = "configuration_changed"
CONFIG_CHANGED_SUBJECT = "Automation configuration updated to v{{version}}"
CONFIG_CHANGED_BODY = (
    "Billing automation configuration v{{version}} was saved by {{saved_by}} "
    "(previously v{{previous_version}})."
)
CONDITIONS_NOT_MET = "Conditions not met - actions were not executed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _schedule_key(trigger: Trigger) -> tuple[Any, ...] | None:
    schedule = trigger.schedule
    if schedule is None:
        return None
    return (schedule.expression, schedule.timezone, schedule.enabled)


def mock_test_data(now: datetime) -> dict[str, Any]:
    """Sample episode used when a trigger is tested without data."""
    return {
        "episode_status": "completed",
        "compliance_score": 92,
        "days_until_auth_expiry": 5,
        "skilled_nursing_visits": 8,
        "total_charges": 2460.0,
        "patient_id": "PT-TEST-001",
        "episode_id": "EP-TEST-001",
        "last_updated": now.isoformat(),
    }


class BillingAutomationEngine:
    """Owns and connects every automation component.

    Attributes:
        store: Versioned configuration store
        runtime: Live counters merged into the configuration document
        audit: Append-only audit log
        queue: Priority execution queue drained by ``workers``
    """

    def __init__(
        self,
        db_path: str,
        seed_path: str | Path | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
        senders: dict[NotificationChannel, NotificationSender] | None = None,
        services: Services | None = None,
        http_client: httpx.Client | None = None,
        tick_seconds: float = 60,
    ) -> None:
        """Build the engine; nothing runs in the background until :meth:`start`.

        Args:
            db_path: SQLite file for configuration versions, audit and dead letters
            seed_path: YAML/JSON document used when no version is saved yet
            clock: Time source, UTC
            sleep: Used between retry attempts
            senders: Notification transports by channel
            services: Claim, compliance, task, status and report collaborators
            http_client: Client for webhook and API actions
            tick_seconds: Scheduler scan interval
        """
        self._clock = clock or _utcnow
        self.runtime = RuntimeState()
        self.store = ConfigStore(db_path, seed_path, self._clock, overlay=self._persisted_document)
        config = self.store.load()
        self.runtime.seed(config)

        self.audit = AuditLog(
            db_path, settings=lambda: self.config.config.audit_settings, clock=self._clock
        )
        self.dead_letters = DeadLetterStore(db_path, self._clock)
        self.retry = RetryExecutor(sleep)
        self.notifications = NotificationDispatcher(
            lambda: self.config.config.notification_settings,
            senders=senders,
            retry=self.retry,
            audit=self.audit,
            clock=self._clock,
        )
        self.business_rules = BusinessRuleEngine(
            lambda: self.config.config.business_rules, self.runtime, self.audit, self._clock
        )
        self.dispatcher = ActionDispatcher(
            lambda: self.config.config,
            services=services or Services.in_memory(self._clock),
            notifications=self.notifications,
            business_rules=self.business_rules,
            http_client=http_client,
            retry=self.retry,
            audit=self.audit,
            clock=self._clock,
        )

        performance = config.config.performance_settings
        self.queue = ExecutionQueue(
            performance.queue_settings.max_queue_size,
            performance.queue_settings.priority_levels,
            self._clock,
        )
        self.executor = ChainExecutor(
            self.dispatcher, lambda: self.config, self.dead_letters, self.audit, self._clock
        )
        self.escalations = EscalationManager(self.notifications, self.submit, self.audit)
        self.monitor = ThresholdMonitor(
            lambda: self.config,
            self.runtime,
            self.submit,
            self.escalations,
            TaskBoard(),
            self.audit,
            self._clock,
        )
        self.registry = TriggerRegistry(lambda: self.config, self.submit)
        self.workers = WorkerPool(self.queue, self.process, performance.max_concurrent_triggers)
        self.scheduler = TriggerScheduler(
            lambda: self.config,
            self.runtime,
            self.registry.fire,
            audit=self.audit,
            clock=self._clock,
            tick_seconds=tick_seconds,
            housekeeping=(self.monitor.tick, self.notifications.flush_deferred),
            purge=self.audit.purge,
        )
        self.store.subscribe(self._on_config_change)

    @property
    def config(self) -> AutomationConfig:
        return self.store.current()

    @property
    def running(self) -> bool:
        return self.workers.running

    # --- lifecycle ---

    def start(self) -> None:
        if self.running:
            return
        self.queue.reopen()
        self.workers.start()
        self.scheduler.start()
        logger.info("Billing automation engine started")

    def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.queue.close()
        self.workers.stop()
        logger.info("Billing automation engine stopped")

    def close(self) -> None:
        self.stop()
        self.executor.shutdown()
        self.dispatcher.close()
        self.audit.close()

    # --- configuration ---

    def _persisted_document(self, config: AutomationConfig) -> dict[str, Any]:
        # Submitted counters may only raise the live ones.
        self.runtime.seed(config)
        changed = self._reset_changed_schedules(self.store.current(), config)
        document = self.runtime.merge_into(config.to_document())
        for trigger in document.get("triggers", []):
            # A changed schedule is recomputed from its new expression.
            if trigger.get("id") in changed and trigger.get("schedule"):
                trigger["schedule"].pop("nextRun", None)
        return document

    def get_configuration(self) -> dict[str, Any]:
        """Active document with live counters merged in."""
        return self.runtime.merge_into(self.config.to_document())

    def save_configuration(
        self, data: dict[str, Any], user_id: str | None = None
    ) -> AutomationConfig:
        """Validate and activate a configuration document.

        Raises:
            ConfigValidationError: With every problem found; nothing changes.
        """
        previous = self.config
        try:
            config = self.store.save(data, user_id)
        except ConfigValidationError as e:
            self.audit.record(
                AuditEvent.CONFIGURATION_REJECTED,
                level=AuditLogLevel.WARN,
                resource_type="configuration",
                details={"errors": e.errors},
                status="rejected",
                error_message=str(e),
                user_id=user_id,
            )
            raise

        self.audit.record(
            AuditEvent.CONFIGURATION_CHANGED,
            resource_type="configuration",
            resource_id=config.version,
            details={
                "version": config.version,
                "previous_version": previous.version,
                "triggers": len(config.triggers),
                "thresholds": len(config.thresholds),
                "business_rules": len(config.config.business_rules),
            },
            user_id=user_id,
        )
        self.notifications.notify(
            None,
            CONFIG_CHANGED_NOTIFICATION,
            {
                "version": config.version,
                "previous_version": previous.version,
                "saved_by": user_id or "system",
            },
            channel=NotificationChannel.EMAIL,
            subject=CONFIG_CHANGED_SUBJECT,
            body=CONFIG_CHANGED_BODY,
        )
        return config

    def _on_config_change(self, old: AutomationConfig, new: AutomationConfig) -> None:
        performance = new.config.performance_settings
        self.queue.configure(
            performance.queue_settings.max_queue_size,
            performance.queue_settings.priority_levels,
        )
        self.workers.resize(performance.max_concurrent_triggers)

    def _reset_changed_schedules(self, old: AutomationConfig, new: AutomationConfig) -> set[str]:
        """Drop the computed next run of every trigger whose schedule changed."""
        changed = set()
        for trigger in new.triggers:
            before = old.trigger(trigger.id)
            if before is None or _schedule_key(before) != _schedule_key(trigger):
                self.runtime.reset_schedule(trigger.id)
                changed.add(trigger.id)
        return changed

    # --- execution ---

    def _reject(self, rejected: ExecutionRequest) -> None:
        self.audit.record(
            AuditEvent.QUEUE_REJECTED,
            level=AuditLogLevel.WARN,
            resource_type=rejected.origin.value,
            resource_id=rejected.source_id,
            details=rejected.describe(),
            status="rejected",
            error_message="Execution queue is full",
        )

    def _enqueue(self, request: ExecutionRequest) -> bool:
        rejected = self.queue.put(request)
        if rejected is not None:
            self._reject(rejected)
            if rejected.started:
                self._abandon(rejected)
        return rejected is not request

    def _abandon(self, request: ExecutionRequest) -> None:
        """Close out a chain that lost its place in the queue between passes."""
        message = "Execution queue is full; remaining actions were not run"
        logger.error(
            f"{request.origin.value} {request.source_id} dropped at action "
            f"{request.resume_index} of {len(request.actions)}"
        )
        results = cancelled_results(request.actions, request.resume_index)
        request.action_results.extend(result.to_dict() for result in results)
        outcome = ChainOutcome(
            ChainStatus.FAILED,
            results,
            active_seconds=request.active_seconds,
            error=message,
        )
        self._finish(request, outcome)

    def submit(self, request: ExecutionRequest) -> bool:
        """Queue a request, or run it on this thread when queueing is disabled.

        Returns:
            False if the request was rejected because the queue is full
        """
        if not self.config.config.performance_settings.queue_settings.enabled:
            self.process(request)
            return True
        return self._enqueue(request)

    def process(self, request: ExecutionRequest) -> ChainOutcome:
        """Run one pass of a request; re-enqueue it when a later pass is due."""
        outcome = self.executor.execute(request)
        request.action_results.extend(result.to_dict() for result in outcome.results)

        if outcome.status is ChainStatus.DEFERRED:
            request.resume_index = outcome.resume_index or 0
            request.not_before = outcome.not_before
            request.active_seconds = outcome.active_seconds
            self._enqueue(request)
            return outcome

        if outcome.status is ChainStatus.RETRY_SCHEDULED:
            request.resume_index = outcome.resume_index or 0
            request.not_before = outcome.not_before
            request.dispatch_attempt += 1
            request.active_seconds = 0.0
            logger.warning(
                f"Retrying {request.origin.value} {request.source_id} "
                f"(dispatch {request.dispatch_attempt}) at {outcome.not_before.isoformat()}"
            )
            self._enqueue(request)
            return outcome

        self._finish(request, outcome)
        return outcome

    def _finish(self, request: ExecutionRequest, outcome: ChainOutcome) -> None:
        finished_at = self._clock()
        summary = {
            "requestId": request.id,
            "origin": request.origin.value,
            "sourceId": request.source_id,
            "subjectId": request.subject_id,
            "success": outcome.success,
            "executionTime": round(outcome.active_seconds * 1000),
            "dispatchAttempts": request.dispatch_attempt,
            "actions": list(request.action_results),
            "error": outcome.error,
            "finishedAt": finished_at.isoformat(),
        }
        self.audit.record_execution(summary)

        if request.origin is not RequestOrigin.TRIGGER:
            return
        stats = self.runtime.record_execution(
            request.source_id, outcome.success, outcome.active_seconds, finished_at
        )
        self.audit.record(
            AuditEvent.TRIGGER_EXECUTED if outcome.success else AuditEvent.TRIGGER_FAILED,
            level=AuditLogLevel.INFO if outcome.success else AuditLogLevel.ERROR,
            resource_type="trigger",
            resource_id=request.source_id,
            details={
                "request_id": request.id,
                "subject_id": request.subject_id,
                "execution_time": summary["executionTime"],
                "trigger_count": stats.trigger_count,
                "timed_out": outcome.timed_out,
            },
            status="success" if outcome.success else "error",
            error_message=outcome.error,
        )

    def ingest_fact(self, fact: Fact) -> list[TriggerMatch]:
        return self.registry.on_fact(fact)

    def test_trigger(
        self,
        trigger: Trigger,
        test_data: Mapping[str, Any] | None = None,
        dry_run: bool = True,
    ) -> dict[str, Any]:
        """Evaluate a trigger against sample data and report each step.

        With ``dry_run`` (the default) handlers report what they would do
        and nothing is delivered, persisted or counted.
        """
        started = time.monotonic()
        now = self._clock()
        data = dict(test_data) if test_data else mock_test_data(now)
        fact = Fact(
            subject_id=str(data.get("episode_id") or data.get("subject_id") or "test"),
            category=FactCategory(trigger.trigger_type.value),
            data=data,
            timestamp=now,
            source="test",
        )
        matched, traces = trace_conditions(trigger.conditions, fact)

        actions: list[dict[str, Any]] = []
        errors: list[str] = []
        warnings: list[str] = []
        if not trigger.enabled:
            warnings.append("Trigger is disabled")
        if matched:
            request = build_request(trigger, fact)
            outcome = self.executor.execute(request, dry_run=True) if dry_run else self.process(request)
            actions = [result.to_dict() for result in outcome.results]
            errors = [result.error for result in outcome.results if result.error]
            if outcome.status is ChainStatus.DEFERRED:
                warnings.append("Chain deferred; remaining actions were queued")
        else:
            warnings.append(CONDITIONS_NOT_MET)

        return {
            "success": matched and not errors,
            "triggerId": trigger.id,
            "executionTime": round((time.monotonic() - started) * 1000),
            "conditionsEvaluated": [trace.to_dict() for trace in traces],
            "actionsExecuted": actions,
            "errors": errors,
            "warnings": warnings,
            "testData": data,
            "dryRun": dry_run,
        }

    # --- thresholds and rules ---

    def compliance_check(
        self, metrics: Mapping[str, Any], context: Mapping[str, Any] | None = None
    ) -> list[ThresholdCheckResult]:
        return self.monitor.compliance_check(metrics, context)

    def evaluate_business_rules(
        self, context: Mapping[str, Any], subject_id: str | None = None
    ) -> RuleEvaluation:
        return self.business_rules.evaluate(context, subject_id=subject_id)

    # --- dead letters ---

    def replay_dead_letter(
        self, entry_id: str, user_id: str | None = None
    ) -> dict[str, Any] | None:
        """Re-enqueue a pending dead letter as a single-action request.

        Returns:
            None if the entry does not exist

        Raises:
            ValueError: If the entry was already replayed or discarded.
        """
        entry = self.dead_letters.get(entry_id)
        if entry is None:
            return None
        marked = self.dead_letters.mark(entry_id, DeadLetterStatus.REPLAYED)
        if marked is None:
            raise ValueError(f"Dead letter {entry_id} is already {entry.status}")

        request = ExecutionRequest(
            origin=RequestOrigin.REPLAY,
            source_id=entry.source_id,
            subject_id=entry.subject_id,
            actions=(Action.model_validate(entry.action),),
            priority=Priority.HIGH,
            context=dict(entry.context),
            dead_letter_id=entry.id,
        )
        accepted = self.submit(request)
        self.audit.record(
            AuditEvent.DEAD_LETTER_REPLAYED,
            resource_type=entry.origin,
            resource_id=entry.source_id,
            details={"dead_letter_id": entry.id, "request_id": request.id, "accepted": accepted},
            user_id=user_id,
        )
        return {"entry": marked.to_dict(), "requestId": request.id, "accepted": accepted}

    def discard_dead_letter(
        self, entry_id: str, user_id: str | None = None
    ) -> dict[str, Any] | None:
        entry = self.dead_letters.get(entry_id)
        if entry is None:
            return None
        marked = self.dead_letters.mark(entry_id, DeadLetterStatus.DISCARDED)
        if marked is None:
            raise ValueError(f"Dead letter {entry_id} is already {entry.status}")
        self.audit.record(
            AuditEvent.DEAD_LETTER_DISCARDED,
            resource_type=entry.origin,
            resource_id=entry.source_id,
            details={"dead_letter_id": entry.id},
            user_id=user_id,
        )
        return marked.to_dict()

    # --- administrative resets ---

    def _counters_reset(self, resource_type: str, resource_id: str, user_id: str | None) -> None:
        logger.info(f"Counters reset for {resource_type} {resource_id} by {user_id or 'anonymous'}")
        self.audit.record(
            AuditEvent.COUNTERS_RESET,
            level=AuditLogLevel.WARN,
            resource_type=resource_type,
            resource_id=resource_id,
            user_id=user_id,
        )

    def reset_trigger_stats(self, trigger_id: str, user_id: str | None = None) -> None:
        """Raises KeyError for an unknown trigger."""
        if self.config.trigger(trigger_id) is None:
            raise KeyError(trigger_id)
        self.runtime.reset_trigger(trigger_id)
        self._counters_reset("trigger", trigger_id, user_id)

    def reset_threshold_violations(self, threshold_id: str, user_id: str | None = None) -> None:
        """Raises KeyError for an unknown threshold."""
        threshold = self.config.threshold(threshold_id)
        if threshold is None:
            raise KeyError(threshold_id)
        self.runtime.reset_violations(threshold)
        self._counters_reset("threshold", threshold_id, user_id)

    def reset_rule_stats(self, rule_id: str, user_id: str | None = None) -> None:
        """Raises KeyError for an unknown business rule."""
        if not any(rule.id == rule_id for rule in self.config.config.business_rules):
            raise KeyError(rule_id)
        self.runtime.reset_rule(rule_id)
        self._counters_reset("business_rule", rule_id, user_id)

    # --- monitor view ---

    def status(self) -> dict[str, Any]:
        config = self.config
        disabled = self.runtime.disabled_triggers()
        triggers = []
        for trigger in config.triggers:
            stats = self.runtime.trigger_stats(trigger.id)
            schedule = self.runtime.schedule(trigger.id) if trigger.schedule else None
            triggers.append(
                {
                    "id": trigger.id,
                    "name": trigger.name,
                    "enabled": trigger.enabled,
                    "triggerType": trigger.trigger_type.value,
                    "triggerCount": stats.trigger_count,
                    "successCount": stats.success_count,
                    "failureCount": stats.failure_count,
                    "averageExecutionTime": stats.average_execution_time,
                    "lastTriggered": (
                        stats.last_triggered.isoformat() if stats.last_triggered else None
                    ),
                    "nextRun": (
                        schedule.next_run.isoformat() if schedule and schedule.next_run else None
                    ),
                    "scheduleError": disabled.get(trigger.id),
                }
            )
        return {
            "running": self.running,
            "version": config.version,
            "enabled": config.config.enabled,
            "queue": self.queue.stats(),
            "workers": {"size": self.workers.size, "busy": self.workers.busy},
            "scheduler": {"running": self.scheduler.is_running, "jobs": self.scheduler.get_jobs()},
            "triggers": triggers,
            "violations": self.monitor.violations(),
            "pendingTasks": len(self.monitor.tasks.list(status=TaskStatus.PENDING)),
            "deadLetters": self.dead_letters.count(DeadLetterStatus.PENDING),
            "deferredNotifications": len(self.notifications.deferred()),
            "auditBacklog": self.audit.pending,
            "recentExecutions": self.audit.recent_executions(),
        }
