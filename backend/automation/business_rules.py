"""Business rule engine.

Rules are guard expressions evaluated against an ad-hoc request context
(typically a pending billing submission). Each rule maps to a fixed
action; the engine reports matches and leaves enforcement to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from .audit import AuditEvent, AuditLog
from .guards import evaluate_guard
from .models import BusinessRule, BusinessRuleAction
from .runtime import RuntimeState

logger = logging.getLogger(__name__)

_BILLING_DECISIONS = (BusinessRuleAction.HOLD_BILLING, BusinessRuleAction.RELEASE_BILLING)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RuleMatch:
    rule_id: str
    name: str
    action: BusinessRuleAction
    priority: int
    category: str | None = None
    execution_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "name": self.name,
            "action": self.action.value,
            "priority": self.priority,
            "category": self.category,
            "executionCount": self.execution_count,
        }


@dataclass
class RuleEvaluation:
    """Matches in evaluation order (ascending priority)."""

    matches: list[RuleMatch] = field(default_factory=list)
    evaluated: int = 0

    def actions(self) -> set[BusinessRuleAction]:
        return {m.action for m in self.matches}

    @property
    def holds_billing(self) -> bool:
        """The first matching hold/release rule decides."""
        decision = next((m for m in self.matches if m.action in _BILLING_DECISIONS), None)
        return decision is not None and decision.action is BusinessRuleAction.HOLD_BILLING

    @property
    def hold_reason(self) -> str | None:
        decision = next((m for m in self.matches if m.action in _BILLING_DECISIONS), None)
        if decision is None or decision.action is not BusinessRuleAction.HOLD_BILLING:
            return None
        return f"Billing held by rule '{decision.name}' ({decision.rule_id})"

    @property
    def requires_review(self) -> bool:
        return BusinessRuleAction.REQUIRE_REVIEW in self.actions()

    @property
    def flagged_for_audit(self) -> bool:
        return BusinessRuleAction.FLAG_FOR_AUDIT in self.actions()

    def to_dict(self) -> dict[str, Any]:
        return {
            "evaluatedRules": self.evaluated,
            "matches": [m.to_dict() for m in self.matches],
            "holdBilling": self.holds_billing,
            "holdReason": self.hold_reason,
            "requiresReview": self.requires_review,
            "flaggedForAudit": self.flagged_for_audit,
        }


class BusinessRuleEngine:
    def __init__(
        self,
        rules: Callable[[], list[BusinessRule]],
        runtime: RuntimeState,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._rules = rules
        self._runtime = runtime
        self._audit = audit
        self._clock = clock or _utcnow

    def active_rules(self, now: datetime | None = None) -> list[BusinessRule]:
        """Enabled rules in force at ``now``, ascending priority."""
        now = now or self._clock()
        active = [
            rule
            for rule in self._rules()
            if rule.enabled
            and rule.effective_date <= now
            and (rule.expiration_date is None or now <= rule.expiration_date)
        ]
        return sorted(active, key=lambda rule: rule.priority)

    def evaluate(
        self,
        context: Mapping[str, Any],
        now: datetime | None = None,
        subject_id: str | None = None,
    ) -> RuleEvaluation:
        """Evaluate every active rule against ``context``.

        A match increments the rule's execution count whether or not the
        caller goes on to enforce the action.
        """
        now = now or self._clock()
        evaluation = RuleEvaluation()
        for rule in self.active_rules(now):
            evaluation.evaluated += 1
            if not evaluate_guard(rule.condition, context):
                continue
            stats = self._runtime.record_rule_match(rule.id, now)
            evaluation.matches.append(
                RuleMatch(
                    rule_id=rule.id,
                    name=rule.name,
                    action=rule.action,
                    priority=rule.priority,
                    category=rule.category,
                    execution_count=stats.execution_count,
                )
            )
            logger.info(f"Business rule {rule.id} matched ({rule.action.value})")
            if self._audit is not None:
                self._audit.record(
                    AuditEvent.BUSINESS_RULE_MATCHED,
                    resource_type="business_rule",
                    resource_id=rule.id,
                    details={
                        "action": rule.action.value,
                        "subject_id": subject_id,
                        "execution_count": stats.execution_count,
                    },
                )
        return evaluation
