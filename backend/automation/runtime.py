"""Mutable runtime counters kept apart from the immutable config snapshot.

Counters (trigger stats, violation counts, escalation levels, business
rule execution counts, schedule next-run times) are seeded from the saved
document and only move forward; a config save never lowers them. Explicit
reset methods back the administrative endpoints.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Sequence

from .models import AutomationConfig, ComplianceThreshold, EscalationRule


class ViolationStatus(str, Enum):
    """Lifecycle of a threshold violation."""

    CLEAR = "clear"
    OPEN = "open"
    UNRESOLVED = "unresolved"


@dataclass
class TriggerStats:
    trigger_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    average_execution_time: float = 0.0
    last_triggered: datetime | None = None


@dataclass
class ScheduleState:
    next_run: datetime | None = None
    disabled_reason: str | None = None


@dataclass
class EscalationState:
    rule_key: str
    max_escalations: int
    level: int = 0
    last_escalated_at: datetime | None = None


@dataclass
class ViolationState:
    threshold_id: str
    violation_count: int = 0
    last_violation: datetime | None = None
    status: ViolationStatus = ViolationStatus.CLEAR
    last_metric: Any = None
    last_context: dict[str, Any] = field(default_factory=dict)
    escalations: dict[str, EscalationState] = field(default_factory=dict)
    unresolved_at: datetime | None = None

    def escalation(self, rule: EscalationRule, index: int) -> EscalationState:
        key = escalation_key(rule, index)
        state = self.escalations.get(key)
        if state is None:
            state = EscalationState(
                rule_key=key,
                max_escalations=rule.max_escalations,
                level=min(rule.current_escalation_level, rule.max_escalations),
            )
            self.escalations[key] = state
        state.max_escalations = rule.max_escalations
        return state

    def clear_escalations(self, rules: Sequence[EscalationRule] = ()) -> None:
        """Back to CLEAR with every escalation level at 0."""
        self.status = ViolationStatus.CLEAR
        self.unresolved_at = None
        for esc in self.escalations.values():
            esc.level = 0
            esc.last_escalated_at = None
        for index, rule in enumerate(rules):
            self.escalation(rule, index).level = 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "thresholdId": self.threshold_id,
            "violationCount": self.violation_count,
            "lastViolation": self.last_violation.isoformat() if self.last_violation else None,
            "status": self.status.value,
            "lastMetric": self.last_metric,
            "unresolvedAt": self.unresolved_at.isoformat() if self.unresolved_at else None,
            "escalations": {
                key: {
                    "level": esc.level,
                    "maxEscalations": esc.max_escalations,
                    "lastEscalatedAt": (
                        esc.last_escalated_at.isoformat() if esc.last_escalated_at else None
                    ),
                }
                for key, esc in self.escalations.items()
            },
        }


@dataclass
class RuleStats:
    execution_count: int = 0
    last_executed: datetime | None = None


def escalation_key(rule: EscalationRule, index: int) -> str:
    return rule.id or f"rule_{index}"


def _later(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


class RuntimeState:
    """Thread-safe store of engine counters."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._threshold_locks: dict[str, threading.Lock] = {}
        self.triggers: dict[str, TriggerStats] = {}
        self.schedules: dict[str, ScheduleState] = {}
        self.violations: dict[str, ViolationState] = {}
        self.rules: dict[str, RuleStats] = {}

    # --- seeding ---

    def seed(self, config: AutomationConfig) -> None:
        """Merge counters from a saved document without lowering any of them."""
        with self._lock:
            for trigger in config.triggers:
                stats = self.triggers.setdefault(trigger.id, TriggerStats())
                if trigger.trigger_count > stats.trigger_count:
                    stats.trigger_count = trigger.trigger_count
                    stats.average_execution_time = trigger.average_execution_time
                stats.success_count = max(stats.success_count, trigger.success_count)
                stats.failure_count = max(stats.failure_count, trigger.failure_count)
                stats.last_triggered = _later(stats.last_triggered, trigger.last_triggered)

            for threshold in config.thresholds:
                state = self.violations.setdefault(
                    threshold.id, ViolationState(threshold_id=threshold.id)
                )
                state.violation_count = max(state.violation_count, threshold.violation_count)
                state.last_violation = _later(state.last_violation, threshold.last_violation)
                for index, rule in enumerate(threshold.escalation_rules):
                    esc = state.escalation(rule, index)
                    esc.level = max(esc.level, min(rule.current_escalation_level, rule.max_escalations))

            for rule in config.config.business_rules:
                stats = self.rules.setdefault(rule.id, RuleStats())
                stats.execution_count = max(stats.execution_count, rule.execution_count)
                stats.last_executed = _later(stats.last_executed, rule.last_executed)

    # --- triggers ---

    def trigger_stats(self, trigger_id: str) -> TriggerStats:
        with self._lock:
            return copy.copy(self.triggers.setdefault(trigger_id, TriggerStats()))

    def record_execution(
        self, trigger_id: str, success: bool, elapsed_seconds: float, finished_at: datetime
    ) -> TriggerStats:
        """Atomically fold one finished chain into the trigger's stats."""
        with self._lock:
            stats = self.triggers.setdefault(trigger_id, TriggerStats())
            total = stats.average_execution_time * stats.trigger_count + elapsed_seconds
            stats.trigger_count += 1
            if success:
                stats.success_count += 1
            else:
                stats.failure_count += 1
            stats.average_execution_time = round(total / stats.trigger_count, 3)
            stats.last_triggered = finished_at
            return copy.copy(stats)

    def reset_trigger(self, trigger_id: str) -> None:
        with self._lock:
            self.triggers[trigger_id] = TriggerStats()

    # --- schedules ---

    def schedule(self, trigger_id: str) -> ScheduleState:
        with self._lock:
            return self.schedules.setdefault(trigger_id, ScheduleState())

    def reset_schedule(self, trigger_id: str) -> None:
        """Forget the computed next run so the scheduler recomputes it."""
        with self._lock:
            self.schedules[trigger_id] = ScheduleState()

    def disable_schedule(self, trigger_id: str, reason: str) -> None:
        with self._lock:
            self.schedules.setdefault(trigger_id, ScheduleState()).disabled_reason = reason

    def disabled_triggers(self) -> dict[str, str]:
        with self._lock:
            return {
                tid: state.disabled_reason
                for tid, state in self.schedules.items()
                if state.disabled_reason
            }

    # --- thresholds ---

    @contextmanager
    def threshold_guard(self, threshold_id: str) -> Iterator[ViolationState]:
        """Serialize updates to one threshold; different thresholds proceed independently."""
        with self._lock:
            lock = self._threshold_locks.setdefault(threshold_id, threading.Lock())
        with lock:
            with self._lock:
                state = self.violations.setdefault(
                    threshold_id, ViolationState(threshold_id=threshold_id)
                )
            yield state

    def violation(self, threshold_id: str) -> ViolationState | None:
        with self._lock:
            return self.violations.get(threshold_id)

    def reset_violations(self, threshold: ComplianceThreshold) -> None:
        with self.threshold_guard(threshold.id) as state:
            state.violation_count = 0
            state.last_violation = None
            state.clear_escalations(threshold.escalation_rules)

    # --- business rules ---

    def record_rule_match(self, rule_id: str, at: datetime) -> RuleStats:
        with self._lock:
            stats = self.rules.setdefault(rule_id, RuleStats())
            stats.execution_count += 1
            stats.last_executed = at
            return copy.copy(stats)

    def reset_rule(self, rule_id: str) -> None:
        with self._lock:
            self.rules[rule_id] = RuleStats()

    # --- document view ---

    def merge_into(self, document: dict[str, Any]) -> dict[str, Any]:
        """Overlay live counters onto a serialized configuration document."""
        merged = copy.deepcopy(document)
        with self._lock:
            for trigger in merged.get("triggers", []):
                stats = self.triggers.get(trigger.get("id"))
                if stats:
                    trigger["triggerCount"] = stats.trigger_count
                    trigger["successCount"] = stats.success_count
                    trigger["failureCount"] = stats.failure_count
                    trigger["averageExecutionTime"] = stats.average_execution_time
                    if stats.last_triggered:
                        trigger["lastTriggered"] = stats.last_triggered.isoformat()
                schedule_state = self.schedules.get(trigger.get("id"))
                if schedule_state and trigger.get("schedule") and schedule_state.next_run:
                    trigger["schedule"]["nextRun"] = schedule_state.next_run.isoformat()

            for threshold in merged.get("thresholds", []):
                state = self.violations.get(threshold.get("id"))
                if not state:
                    continue
                threshold["violationCount"] = state.violation_count
                if state.last_violation:
                    threshold["lastViolation"] = state.last_violation.isoformat()
                for index, rule in enumerate(threshold.get("escalationRules", [])):
                    key = rule.get("id") or f"rule_{index}"
                    esc = state.escalations.get(key)
                    if esc:
                        rule["currentEscalationLevel"] = esc.level

            for rule in merged.get("config", {}).get("businessRules", []):
                stats = self.rules.get(rule.get("id"))
                if stats:
                    rule["executionCount"] = stats.execution_count
                    if stats.last_executed:
                        rule["lastExecuted"] = stats.last_executed.isoformat()
        return merged
