"""Compliance threshold monitoring.

``ThresholdMonitor.check_threshold`` applies one metric to one threshold:

- applicability gate (insurance type, service type, effective window);
- violation test by threshold type;
- on violation: count it, run or queue remediation, then evaluate
  escalation rules.

Updates to one threshold are serialized through ``RuntimeState``; all
dispatching happens after the lock is released. A violation that reached
UNRESOLVED is left untouched until someone resolves it.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from .audit import AuditEvent, AuditLog
from .conditions import coerce
from .escalation import EscalationManager, escalation_variables
from .execution_queue import ExecutionRequest, RequestOrigin
from .models import (
    AuditLogLevel,
    AutomationConfig,
    ComplianceThreshold,
    DataType,
    RemediationAction,
    ThresholdType,
)
from .runtime import RuntimeState, ViolationStatus

logger = logging.getLogger(__name__)

_BELOW_IS_VIOLATION = {ThresholdType.MINIMUM_SCORE, ThresholdType.PERCENTAGE}
_ABOVE_IS_VIOLATION = {
    ThresholdType.MAXIMUM_VISITS,
    ThresholdType.AMOUNT,
    ThresholdType.TIME_LIMIT,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _documents(metric: Any) -> set[str]:
    if isinstance(metric, Mapping):
        return {str(key) for key, present in metric.items() if present}
    if isinstance(metric, str):
        return {metric}
    if isinstance(metric, Iterable):
        return {str(item) for item in metric}
    return set()


def missing_documents(threshold: ComplianceThreshold, metric: Any) -> list[str]:
    return sorted(set(threshold.required_documents or []) - _documents(metric))


def is_violation(threshold: ComplianceThreshold, metric: Any) -> bool:
    """Apply the threshold's comparison to ``metric``.

    Raises:
        CoercionError: If a numeric threshold gets a non-numeric metric.
    """
    if threshold.threshold_type is ThresholdType.REQUIRED_DOCUMENTS:
        if threshold.required_documents is not None:
            return bool(missing_documents(threshold, metric))
        return coerce(metric, DataType.NUMBER) < threshold.value

    value = coerce(metric, DataType.NUMBER)
    if threshold.threshold_type in _BELOW_IS_VIOLATION:
        return value < threshold.value
    return value > threshold.value


def _context_value(context: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if context.get(key) is not None:
            return context[key]
    return None


def applicability(
    threshold: ComplianceThreshold, context: Mapping[str, Any], now: datetime
) -> str | None:
    """None when the threshold applies, else the reason it does not."""
    if not threshold.enabled:
        return "Threshold is disabled"
    if now < threshold.effective_date:
        return "Threshold is not yet effective"
    if threshold.expiration_date is not None and now > threshold.expiration_date:
        return "Threshold has expired"

    if threshold.applicable_insurance_types:
        insurance = _context_value(context, "insurance_type", "insuranceType")
        if insurance not in threshold.applicable_insurance_types:
            return f"Insurance type {insurance!r} is not covered"
    if threshold.applicable_service_types:
        service = _context_value(context, "service_type", "serviceType")
        if service not in threshold.applicable_service_types:
            return f"Service type {service!r} is not covered"
    return None


class TaskStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"


@dataclass
class PendingTask:
    """A remediation step waiting for a human."""

    id: str
    threshold_id: str
    subject_id: str
    remediation: RemediationAction
    assigned_role: str | None
    priority: str
    created_at: datetime
    context: dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    approved_by: str | None = None
    approved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "thresholdId": self.threshold_id,
            "subjectId": self.subject_id,
            "actionType": self.remediation.action_type.value,
            "remediationId": self.remediation.id,
            "parameters": self.remediation.parameters,
            "assignedRole": self.assigned_role,
            "priority": self.priority,
            "requiresApproval": self.remediation.requires_approval,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "approvedBy": self.approved_by,
            "approvedAt": self.approved_at.isoformat() if self.approved_at else None,
        }


class TaskBoard:
    """Pending remediation tasks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._tasks: dict[str, PendingTask] = {}

    def add(
        self,
        threshold: ComplianceThreshold,
        remediation: RemediationAction,
        subject_id: str,
        context: dict[str, Any],
        now: datetime,
    ) -> PendingTask:
        with self._lock:
            task = PendingTask(
                id=f"rem_task_{next(self._ids)}",
                threshold_id=threshold.id,
                subject_id=subject_id,
                remediation=remediation,
                assigned_role=remediation.assigned_role,
                priority=threshold.severity.to_priority().value,
                created_at=now,
                context=dict(context),
            )
            self._tasks[task.id] = task
        return task

    def get(self, task_id: str) -> PendingTask | None:
        with self._lock:
            return self._tasks.get(task_id)

    def list(
        self, status: TaskStatus | None = None, role: str | None = None
    ) -> list[PendingTask]:
        with self._lock:
            tasks = list(self._tasks.values())
        return [
            t
            for t in tasks
            if (status is None or t.status is status)
            and (role is None or t.assigned_role == role)
        ]

    def approve(self, task_id: str, user_id: str | None, now: datetime) -> PendingTask | None:
        """Mark a pending task approved; None if missing or already approved."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status is not TaskStatus.PENDING:
                return None
            task.status = TaskStatus.APPROVED
            task.approved_by = user_id
            task.approved_at = now
            return task


@dataclass
class ThresholdCheckResult:
    threshold_id: str
    applicable: bool
    violated: bool = False
    status: ViolationStatus = ViolationStatus.CLEAR
    violation_count: int = 0
    metric: Any = None
    reason: str | None = None
    remediation: list[dict[str, Any]] = field(default_factory=list)
    escalations: list[dict[str, Any]] = field(default_factory=list)
    missing_documents: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "thresholdId": self.threshold_id,
            "applicable": self.applicable,
            "violated": self.violated,
            "status": self.status.value,
            "violationCount": self.violation_count,
            "metric": self.metric,
            "reason": self.reason,
            "remediation": self.remediation,
            "escalations": self.escalations,
            "missingDocuments": self.missing_documents,
        }


class ThresholdMonitor:
    def __init__(
        self,
        config: Callable[[], AutomationConfig],
        runtime: RuntimeState,
        submit: Callable[[ExecutionRequest], Any],
        escalations: EscalationManager,
        tasks: TaskBoard | None = None,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._submit = submit
        self._escalations = escalations
        self.tasks = tasks or TaskBoard()
        self._audit = audit
        self._clock = clock or _utcnow

    def _audit_event(self, event: AuditEvent, threshold_id: str, **kwargs: Any) -> None:
        if self._audit is not None:
            self._audit.record(event, resource_type="threshold", resource_id=threshold_id, **kwargs)

    def check_threshold(
        self,
        threshold: ComplianceThreshold,
        metric: Any,
        context: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ThresholdCheckResult:
        """Apply ``metric`` to ``threshold`` and react to a violation."""
        now = now or self._clock()
        context = dict(context or {})
        subject_id = str(context.get("subject_id") or context.get("episode_id") or threshold.id)

        reason = applicability(threshold, context, now)
        if reason is not None:
            return ThresholdCheckResult(threshold.id, applicable=False, metric=metric, reason=reason)

        violated = is_violation(threshold, metric)
        cleared = False
        with self._runtime.threshold_guard(threshold.id) as state:
            if state.status is ViolationStatus.UNRESOLVED:
                return ThresholdCheckResult(
                    threshold.id,
                    applicable=True,
                    violated=violated,
                    status=state.status,
                    violation_count=state.violation_count,
                    metric=metric,
                    reason="Violation is unresolved and requires manual intervention",
                )

            state.last_metric = metric
            if not violated:
                if state.status is ViolationStatus.OPEN:
                    state.clear_escalations(threshold.escalation_rules)
                    cleared = True
                result = ThresholdCheckResult(
                    threshold.id,
                    applicable=True,
                    status=state.status,
                    violation_count=state.violation_count,
                    metric=metric,
                )
            else:
                state.violation_count += 1
                state.last_violation = now
                state.status = ViolationStatus.OPEN
                state.last_context = context
                decisions = self._escalations.decide(threshold, state, now)
                variables = escalation_variables(threshold, state)
                result = ThresholdCheckResult(
                    threshold.id,
                    applicable=True,
                    violated=True,
                    status=state.status,
                    violation_count=state.violation_count,
                    metric=metric,
                )

        if cleared:
            logger.info(f"Threshold {threshold.id} back within limits")
            self._audit_event(AuditEvent.THRESHOLD_CLEARED, threshold.id, details={"metric": metric})
        if not violated:
            return result

        if threshold.threshold_type is ThresholdType.REQUIRED_DOCUMENTS:
            result.missing_documents = missing_documents(threshold, metric)
        logger.warning(
            f"Threshold {threshold.id} violated (metric {metric!r}, limit {threshold.value}); "
            f"{result.violation_count} violations"
        )
        self._audit_event(
            AuditEvent.THRESHOLD_VIOLATED,
            threshold.id,
            level=AuditLogLevel.WARN,
            details={
                "subject_id": subject_id,
                "metric": metric,
                "threshold_value": threshold.value,
                "severity": threshold.severity.value,
                "violation_count": result.violation_count,
                "missing_documents": result.missing_documents,
            },
            status="violation",
        )
        result.remediation = self._remediate(threshold, variables, subject_id, now)
        result.escalations = self._escalations.dispatch(threshold, decisions, variables, subject_id)
        return result

    def _remediate(
        self,
        threshold: ComplianceThreshold,
        variables: dict[str, Any],
        subject_id: str,
        now: datetime,
    ) -> list[dict[str, Any]]:
        summary: list[dict[str, Any]] = []
        automatic = []
        for remediation in threshold.remediation_actions:
            if (
                threshold.auto_remediation
                and remediation.auto_execute
                and not remediation.requires_approval
            ):
                automatic.append(remediation.to_action())
                summary.append(
                    {"remediationId": remediation.id, "status": "dispatched"}
                )
                continue
            task = self.tasks.add(threshold, remediation, subject_id, variables, now)
            summary.append(
                {"remediationId": remediation.id, "status": "pending", "taskId": task.id}
            )
            self._audit_event(
                AuditEvent.REMEDIATION_PENDING,
                threshold.id,
                details={
                    "task_id": task.id,
                    "action_type": remediation.action_type.value,
                    "assigned_role": remediation.assigned_role,
                },
            )

        if automatic:
            request = ExecutionRequest(
                origin=RequestOrigin.THRESHOLD,
                source_id=threshold.id,
                subject_id=subject_id,
                actions=tuple(automatic),
                priority=threshold.severity.to_priority(),
                context=dict(variables, subject_id=subject_id),
            )
            accepted = self._submit(request)
            for item in summary:
                if item["status"] == "dispatched":
                    item["requestId"] = request.id
                    if not accepted:
                        item["status"] = "rejected"
            self._audit_event(
                AuditEvent.REMEDIATION_EXECUTED,
                threshold.id,
                details={
                    "request_id": request.id,
                    "actions": [a.action_type.value for a in automatic],
                    "accepted": bool(accepted),
                },
            )
        return summary

    def compliance_check(
        self,
        metrics: Mapping[str, Any],
        context: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> list[ThresholdCheckResult]:
        """Check every enabled threshold whose metric is supplied.

        A metric is looked up by threshold id first, then by threshold type.
        """
        results = []
        for threshold in self._config().thresholds:
            if not threshold.enabled:
                continue
            if threshold.id in metrics:
                metric = metrics[threshold.id]
            elif threshold.threshold_type.value in metrics:
                metric = metrics[threshold.threshold_type.value]
            else:
                continue
            results.append(self.check_threshold(threshold, metric, context, now))
        return results

    def tick(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Re-evaluate open violations so delayed escalations fire."""
        now = now or self._clock()
        fired = []
        for threshold in self._config().thresholds:
            if not threshold.enabled or not threshold.escalation_rules:
                continue
            state = self._runtime.violation(threshold.id)
            if state is None or state.status is not ViolationStatus.OPEN:
                continue
            with self._runtime.threshold_guard(threshold.id) as state:
                decisions = self._escalations.decide(threshold, state, now)
                variables = escalation_variables(threshold, state)
                subject_id = str(state.last_context.get("subject_id") or threshold.id)
            if decisions:
                fired.extend(
                    self._escalations.dispatch(threshold, decisions, variables, subject_id)
                )
        return fired

    def resolve_violation(self, threshold_id: str, user_id: str | None = None) -> dict[str, Any]:
        """Manually close a violation: status clear, escalation levels reset.

        Raises:
            KeyError: If the threshold is not configured.
        """
        threshold = self._config().threshold(threshold_id)
        if threshold is None:
            raise KeyError(threshold_id)
        with self._runtime.threshold_guard(threshold_id) as state:
            previous = state.status
            state.clear_escalations(threshold.escalation_rules)
            snapshot = state.snapshot()
        logger.info(f"Violation on {threshold_id} resolved by {user_id or 'system'}")
        self._audit_event(
            AuditEvent.VIOLATION_RESOLVED,
            threshold_id,
            user_id=user_id,
            details={"previous_status": previous.value},
        )
        return snapshot

    def approve_task(self, task_id: str, user_id: str | None = None) -> PendingTask | None:
        """Approve a pending remediation task and dispatch its action."""
        task = self.tasks.approve(task_id, user_id, self._clock())
        if task is None:
            return None
        request = ExecutionRequest(
            origin=RequestOrigin.THRESHOLD,
            source_id=task.threshold_id,
            subject_id=task.subject_id,
            actions=(task.remediation.to_action(),),
            context=dict(task.context),
        )
        accepted = self._submit(request)
        self._audit_event(
            AuditEvent.TASK_APPROVED,
            task.threshold_id,
            user_id=user_id,
            details={"task_id": task.id, "request_id": request.id, "accepted": bool(accepted)},
        )
        return task

    def violations(self) -> list[dict[str, Any]]:
        snapshots = []
        for threshold in self._config().thresholds:
            state = self._runtime.violation(threshold.id)
            if state is not None:
                snapshots.append({**state.snapshot(), "thresholdName": threshold.name})
        return snapshots
