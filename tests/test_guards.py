"""Tests for guard expressions."""

from __future__ import annotations

import pytest

from automation.errors import GuardSyntaxError
from automation.guards import evaluate_guard, guard_error, parse_guard
from automation.models import ConditionOperator, DataType, LogicalOperator


class TestParseGuard:
    """Compilation of guard text into conditions."""

    def test_single_comparison(self):
        (condition,) = parse_guard("compliance_score >= 90")
        assert condition.field == "compliance_score"
        assert condition.operator is ConditionOperator.GREATER_THAN_OR_EQUAL
        assert condition.value == 90.0
        assert condition.data_type is DataType.NUMBER
        assert condition.logical_operator is None

    def test_combinators(self):
        """Both symbolic and word combinators are accepted."""
        conditions = parse_guard("insurance_type === 'Medicare' && visit_count < 5 or urgent == true")
        assert [c.field for c in conditions] == ["insurance_type", "visit_count", "urgent"]
        assert conditions[0].data_type is DataType.STRING
        assert conditions[1].logical_operator is LogicalOperator.AND
        assert conditions[2].logical_operator is LogicalOperator.OR
        assert conditions[2].data_type is DataType.BOOLEAN

    def test_double_quoted_strings_with_escapes(self):
        (condition,) = parse_guard('note != "it\\"s late"')
        assert condition.value == 'it"s late'
        assert condition.operator is ConditionOperator.NOT_EQUALS

    @pytest.mark.parametrize(
        "expression",
        [
            "",
            "compliance_score >=",
            "compliance_score 90",
            "90 > compliance_score",
            "score > 1 &&",
            "score > 1 xor visits < 2",
            "score > other_field",
            "__import__('os').system('id')",
            "score > 1; drop",
        ],
    )
    def test_rejects_expressions_outside_grammar(self, expression):
        """Anything outside field-operator-literal comparisons is a syntax error."""
        with pytest.raises(GuardSyntaxError):
            parse_guard(expression)

    def test_error_carries_position(self):
        with pytest.raises(GuardSyntaxError) as exc_info:
            parse_guard("score > 1@visits")
        assert exc_info.value.position == 9
        assert exc_info.value.expression == "score > 1@visits"


class TestEvaluateGuard:
    """Guard evaluation against variables."""

    def test_absent_guard_passes(self):
        assert evaluate_guard(None, {}) is True
        assert evaluate_guard("   ", {}) is True

    def test_numeric_guard(self):
        assert evaluate_guard("violation_count > 5", {"violation_count": 6})
        assert not evaluate_guard("violation_count > 5", {"violation_count": 5})

    def test_medicare_minimum_rule(self):
        guard = "insurance_type === 'Medicare' && visit_count < 5"
        assert evaluate_guard(guard, {"insurance_type": "Medicare", "visit_count": 3})
        assert not evaluate_guard(guard, {"insurance_type": "Medicare", "visit_count": 6})
        assert not evaluate_guard(guard, {"insurance_type": "Commercial", "visit_count": 3})

    def test_missing_variable_is_false(self):
        assert not evaluate_guard("compliance_score >= 90", {})

    def test_invalid_guard_raises(self):
        with pytest.raises(GuardSyntaxError):
            evaluate_guard("compliance_score >=", {"compliance_score": 95})


class TestGuardError:
    def test_valid_guard_has_no_error(self):
        assert guard_error("a == 1") is None
        assert guard_error(None) is None

    def test_invalid_guard_message(self):
        assert "Incomplete comparison" in guard_error("a ==")
