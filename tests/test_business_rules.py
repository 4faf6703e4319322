"""Tests for business rule evaluation."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from automation.business_rules import BusinessRuleEngine
from automation.models import BusinessRule
from automation.runtime import RuntimeState

NOW = datetime(2024, 7, 10, 15, 0, tzinfo=timezone.utc)


def _rule(rule_id: str, condition: str, action: str, priority: int = 100, **extra) -> BusinessRule:
    return BusinessRule.model_validate(
        {
            "id": rule_id,
            "name": rule_id.replace("_", " ").title(),
            "condition": condition,
            "action": action,
            "priority": priority,
            "effectiveDate": "2024-01-01T00:00:00Z",
            **extra,
        }
    )


@pytest.fixture
def runtime() -> RuntimeState:
    return RuntimeState()


def _engine(rules: list[BusinessRule], runtime: RuntimeState) -> BusinessRuleEngine:
    return BusinessRuleEngine(lambda: rules, runtime, clock=lambda: NOW)


class TestEvaluate:
    def test_medicare_minimum_holds_billing(self, runtime):
        """Fewer than five Medicare visits holds the claim."""
        engine = _engine(
            [_rule("medicare_minimum", "insurance_type === 'Medicare' && visit_count < 5", "hold_billing", 1)],
            runtime,
        )
        evaluation = engine.evaluate({"insurance_type": "Medicare", "visit_count": 3})

        assert evaluation.evaluated == 1
        assert evaluation.holds_billing
        assert evaluation.hold_reason == "Billing held by rule 'Medicare Minimum' (medicare_minimum)"
        assert runtime.rules["medicare_minimum"].execution_count == 1

    def test_no_match(self, runtime):
        engine = _engine(
            [_rule("medicare_minimum", "insurance_type === 'Medicare' && visit_count < 5", "hold_billing")],
            runtime,
        )
        evaluation = engine.evaluate({"insurance_type": "Medicare", "visit_count": 7})
        assert evaluation.matches == []
        assert not evaluation.holds_billing
        assert evaluation.hold_reason is None
        assert "medicare_minimum" not in runtime.rules

    def test_lowest_priority_number_decides_billing(self, runtime):
        """A release at priority 1 beats a hold at priority 5."""
        engine = _engine(
            [
                _rule("hold_large", "total_charges > 10000", "hold_billing", 5),
                _rule("release_vip", "account_tier == 'vip'", "release_billing", 1),
            ],
            runtime,
        )
        evaluation = engine.evaluate({"total_charges": 25000, "account_tier": "vip"})

        assert [m.rule_id for m in evaluation.matches] == ["release_vip", "hold_large"]
        assert not evaluation.holds_billing

    def test_review_and_audit_flags(self, runtime):
        engine = _engine(
            [
                _rule("review_high", "total_charges > 5000", "require_review"),
                _rule("audit_outlier", "visit_count > 30", "flag_for_audit"),
            ],
            runtime,
        )
        evaluation = engine.evaluate({"total_charges": 6000, "visit_count": 31})
        assert evaluation.requires_review
        assert evaluation.flagged_for_audit
        assert not evaluation.holds_billing

        data = evaluation.to_dict()
        assert data["evaluatedRules"] == 2
        assert data["requiresReview"] is True
        assert data["matches"][0]["action"] == "require_review"

    def test_execution_count_accumulates(self, runtime):
        engine = _engine([_rule("always", "visit_count >= 0", "flag_for_audit")], runtime)
        engine.evaluate({"visit_count": 1})
        evaluation = engine.evaluate({"visit_count": 2})
        assert evaluation.matches[0].execution_count == 2
        assert runtime.rules["always"].last_executed == NOW


class TestActiveRules:
    def test_skips_disabled_and_out_of_window_rules(self, runtime):
        rules = [
            _rule("enabled_rule", "a == 1", "hold_billing", 2),
            _rule("disabled_rule", "a == 1", "hold_billing", 1, enabled=False),
            _rule("future_rule", "a == 1", "hold_billing", effectiveDate="2025-01-01T00:00:00Z"),
            _rule("expired_rule", "a == 1", "hold_billing", expirationDate="2024-06-01T00:00:00Z"),
        ]
        active = _engine(rules, runtime).active_rules()
        assert [rule.id for rule in active] == ["enabled_rule"]


class TestEngineIntegration:
    def test_default_rule_and_reset(self, engine):
        evaluation = engine.evaluate_business_rules(
            {"insurance_type": "Medicare", "visit_count": 2}, subject_id="EP-9"
        )
        assert evaluation.holds_billing
        assert engine.get_configuration()["config"]["businessRules"][0]["executionCount"] == 1

        engine.reset_rule_stats("rule_1", "admin")
        assert engine.get_configuration()["config"]["businessRules"][0]["executionCount"] == 0

    def test_reset_unknown_rule(self, engine):
        with pytest.raises(KeyError):
            engine.reset_rule_stats("rule_missing")
