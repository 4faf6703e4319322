"""Multi-level escalation of open threshold violations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from .audit import AuditEvent, AuditLog
from .execution_queue import ExecutionRequest, RequestOrigin
from .guards import evaluate_guard
from .models import (
    Action,
    ActionType,
    AuditLogLevel,
    ComplianceThreshold,
    EscalationActionType,
    EscalationRule,
    NotificationChannel,
)
from .notifications import NotificationDispatcher
from .runtime import ViolationState, ViolationStatus

logger = logging.getLogger(__name__)

ESCALATION_NOTIFICATION_TYPE = "threshold_escalation"

ESCALATION_SUBJECT = "Escalation level {{escalation_level}}: {{threshold_name}}"
ESCALATION_BODY = (
    "Threshold '{{threshold_name}}' ({{severity}}) has {{violation_count}} violations. "
    "Last value {{metric}} against a limit of {{threshold_value}}. "
    "Escalation level {{escalation_level}} of {{max_escalations}}."
)

_CHANNELS = {
    EscalationActionType.EMAIL: NotificationChannel.EMAIL,
    EscalationActionType.SMS: NotificationChannel.SMS,
    EscalationActionType.CALL: NotificationChannel.CALL,
    EscalationActionType.WEBHOOK: NotificationChannel.WEBHOOK,
}


@dataclass
class EscalationDecision:
    """One escalation step decided while holding the threshold lock."""

    rule: EscalationRule
    rule_key: str
    level: int
    max_escalations: int
    exhausted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "ruleId": self.rule_key,
            "actionType": self.rule.action_type.value,
            "level": self.level,
            "maxEscalations": self.max_escalations,
            "exhausted": self.exhausted,
            "escalateTo": list(self.rule.escalate_to),
        }


def escalation_variables(
    threshold: ComplianceThreshold, state: ViolationState
) -> dict[str, Any]:
    """Variables visible to escalation rule conditions."""
    variables = dict(state.last_context)
    variables.update(
        {
            "threshold_id": threshold.id,
            "threshold_name": threshold.name,
            "threshold_value": threshold.value,
            "severity": threshold.severity.value,
            "violation_count": state.violation_count,
            "metric": state.last_metric,
        }
    )
    return variables


class EscalationManager:
    """Decides and dispatches escalations.

    :meth:`decide` mutates escalation levels and must run under the
    threshold's lock; :meth:`dispatch` performs I/O and runs after the lock
    is released.
    """

    def __init__(
        self,
        notifications: NotificationDispatcher | None,
        submit: Callable[[ExecutionRequest], Any],
        audit: AuditLog | None = None,
    ) -> None:
        self._notifications = notifications
        self._submit = submit
        self._audit = audit

    def decide(
        self, threshold: ComplianceThreshold, state: ViolationState, now: datetime
    ) -> list[EscalationDecision]:
        """Advance escalation levels for an open violation.

        A rule escalates when its condition holds and, past level 0, at
        least ``delayMinutes`` have elapsed since its last escalation. A
        rule already at ``maxEscalations`` that would escalate again moves
        the violation to UNRESOLVED instead; nothing escalates after that.
        """
        if state.status is not ViolationStatus.OPEN:
            return []

        decisions: list[EscalationDecision] = []
        variables = escalation_variables(threshold, state)
        for index, rule in enumerate(threshold.escalation_rules):
            esc = state.escalation(rule, index)
            rule_vars = {
                **variables,
                "escalation_level": esc.level,
                "current_escalation_level": esc.level,
            }
            if not evaluate_guard(rule.condition, rule_vars):
                continue
            if (
                esc.level > 0
                and esc.last_escalated_at is not None
                and now - esc.last_escalated_at < timedelta(minutes=rule.delay_minutes)
            ):
                continue

            if esc.level >= rule.max_escalations:
                state.status = ViolationStatus.UNRESOLVED
                state.unresolved_at = now
                decisions.append(
                    EscalationDecision(
                        rule=rule,
                        rule_key=esc.rule_key,
                        level=esc.level,
                        max_escalations=rule.max_escalations,
                        exhausted=True,
                    )
                )
                break

            esc.level += 1
            esc.last_escalated_at = now
            decisions.append(
                EscalationDecision(
                    rule=rule,
                    rule_key=esc.rule_key,
                    level=esc.level,
                    max_escalations=rule.max_escalations,
                )
            )
        return decisions

    def dispatch(
        self,
        threshold: ComplianceThreshold,
        decisions: list[EscalationDecision],
        variables: dict[str, Any],
        subject_id: str,
    ) -> list[dict[str, Any]]:
        """Deliver decided escalations; returns a summary per decision."""
        summaries = []
        for decision in decisions:
            summary = decision.to_dict()
            if decision.exhausted:
                self._exhausted(threshold, decision, variables)
                summaries.append(summary)
                continue

            step_vars = {
                **variables,
                "escalation_level": decision.level,
                "max_escalations": decision.max_escalations,
            }
            if decision.rule.action_type is EscalationActionType.CREATE_TICKET:
                summary["delivery"] = self._ticket(threshold, decision, step_vars, subject_id)
            else:
                summary["delivery"] = self._notify(decision, step_vars)

            logger.warning(
                f"Escalated {threshold.id} to level {decision.level}/{decision.max_escalations} "
                f"via {decision.rule.action_type.value}"
            )
            if self._audit is not None:
                self._audit.record(
                    AuditEvent.ESCALATION_TRIGGERED,
                    level=AuditLogLevel.WARN,
                    resource_type="threshold",
                    resource_id=threshold.id,
                    details={**summary, "subject_id": subject_id},
                )
            summaries.append(summary)
        return summaries

    def _notify(self, decision: EscalationDecision, variables: dict[str, Any]) -> Any:
        if self._notifications is None:
            return {"status": "disabled", "reason": "no notification dispatcher"}
        results = self._notifications.notify(
            decision.rule.escalate_to,
            ESCALATION_NOTIFICATION_TYPE,
            variables,
            channel=_CHANNELS[decision.rule.action_type],
            subject=ESCALATION_SUBJECT,
            body=ESCALATION_BODY,
        )
        return [r.to_dict() for r in results]

    def _ticket(
        self,
        threshold: ComplianceThreshold,
        decision: EscalationDecision,
        variables: dict[str, Any],
        subject_id: str,
    ) -> dict[str, Any]:
        action = Action(
            id=f"{decision.rule_key}_ticket_{decision.level}",
            action_type=ActionType.CREATE_TASK,
            parameters={
                "title": f"Escalation {decision.level}: {threshold.name}",
                "description": (
                    f"{variables.get('violation_count')} violations of {threshold.name}"
                ),
                "assignee": decision.rule.escalate_to[0] if decision.rule.escalate_to else None,
                "priority": threshold.severity.to_priority().value,
            },
        )
        request = ExecutionRequest(
            origin=RequestOrigin.THRESHOLD,
            source_id=threshold.id,
            subject_id=subject_id,
            actions=(action,),
            priority=threshold.severity.to_priority(),
            context=dict(variables),
        )
        accepted = self._submit(request)
        return {"requestId": request.id, "accepted": bool(accepted)}

    def _exhausted(
        self,
        threshold: ComplianceThreshold,
        decision: EscalationDecision,
        variables: dict[str, Any],
    ) -> None:
        logger.error(
            f"Threshold {threshold.id} reached {decision.max_escalations} escalations "
            "without resolution; manual intervention required"
        )
        if self._audit is not None:
            self._audit.record(
                AuditEvent.ESCALATION_EXHAUSTED,
                level=AuditLogLevel.ERROR,
                resource_type="threshold",
                resource_id=threshold.id,
                details={
                    **decision.to_dict(),
                    "violation_count": variables.get("violation_count"),
                },
                status="unresolved",
                error_message="Unresolved - requires manual intervention",
            )
