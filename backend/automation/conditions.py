"""Condition evaluation over facts.

Conditions are an ordered list. The first condition has no logical
operator; every later one folds into the running result with its own
``logicalOperator`` (AND/OR), strictly left to right. There is no grouping
and no precedence between AND and OR.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from utils import parse_flexible_date

from .facts import Fact
from .models import Condition, ConditionOperator, DataType, LogicalOperator

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"true", "yes", "y", "1", "on"}
_FALSE_STRINGS = {"false", "no", "n", "0", "off"}


class CoercionError(ValueError):
    """A fact value could not be coerced to the condition's data type."""


@dataclass(frozen=True)
class ConditionTrace:
    """Outcome of a single condition, used by the trigger test endpoint."""

    condition_id: str | None
    field: str
    operator: str
    expected_value: Any
    actual_value: Any
    result: bool
    logical_operator: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "conditionId": self.condition_id,
            "field": self.field,
            "operator": self.operator,
            "expectedValue": self.expected_value,
            "actualValue": self.actual_value,
            "result": self.result,
            "logicalOperator": self.logical_operator,
        }


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        flexible = parse_flexible_date(value)
        if flexible is None:
            raise CoercionError(f"Cannot parse date: {value!r}")
        parsed = flexible
    else:
        raise CoercionError(f"Cannot coerce {type(value).__name__} to date")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce(value: Any, data_type: DataType) -> Any:
    """Coerce ``value`` to ``data_type``.

    Raises:
        CoercionError: If the value cannot be represented in the data type.
    """
    if value is None:
        raise CoercionError("Cannot coerce None")

    if data_type is DataType.NUMBER:
        if isinstance(value, bool):
            return float(value)
        if isinstance(value, (int, float)):
            return float(value)
        try:
            return float(str(value).strip())
        except ValueError:
            raise CoercionError(f"Not a number: {value!r}") from None

    if data_type is DataType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise CoercionError(f"Not a boolean: {value!r}")

    if data_type is DataType.DATE:
        return _to_datetime(value)

    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _fold_case(value: Any, case_sensitive: bool) -> Any:
    if not case_sensitive and isinstance(value, str):
        return value.casefold()
    return value


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def _apply_operator(condition: Condition, actual: Any) -> bool:
    op = condition.operator
    data_type = condition.data_type
    case_sensitive = True if condition.case_sensitive is None else condition.case_sensitive

    if op in (ConditionOperator.IN, ConditionOperator.NOT_IN):
        options = []
        for item in _as_list(condition.value):
            try:
                options.append(_fold_case(coerce(item, data_type), case_sensitive))
            except CoercionError:
                continue
        member = _fold_case(coerce(actual, data_type), case_sensitive) in options
        return member if op is ConditionOperator.IN else not member

    if op in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
        expected = _fold_case(coerce(condition.value, data_type), case_sensitive)
        if isinstance(actual, (list, tuple, set, frozenset)):
            items = []
            for item in actual:
                try:
                    items.append(_fold_case(coerce(item, data_type), case_sensitive))
                except CoercionError:
                    continue
            found = expected in items
        else:
            haystack = _fold_case(coerce(actual, DataType.STRING), case_sensitive)
            found = str(expected) in haystack
        return found if op is ConditionOperator.CONTAINS else not found

    left = _fold_case(coerce(actual, data_type), case_sensitive)
    right = _fold_case(coerce(condition.value, data_type), case_sensitive)

    if op is ConditionOperator.EQUALS:
        return left == right
    if op is ConditionOperator.NOT_EQUALS:
        return left != right
    if op is ConditionOperator.GREATER_THAN:
        return left > right
    if op is ConditionOperator.GREATER_THAN_OR_EQUAL:
        return left >= right
    if op is ConditionOperator.LESS_THAN:
        return left < right
    if op is ConditionOperator.LESS_THAN_OR_EQUAL:
        return left <= right

    raise ValueError(f"Unsupported operator: {op}")


def _variables(facts: Fact | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(facts, Fact):
        return facts.as_dict()
    return facts


def evaluate_condition(condition: Condition, facts: Fact | Mapping[str, Any]) -> bool:
    """Evaluate one condition. Missing fields and uncoercible values are False."""
    variables = _variables(facts)
    if condition.field not in variables or variables[condition.field] is None:
        return False
    try:
        return _apply_operator(condition, variables[condition.field])
    except (CoercionError, TypeError) as e:
        logger.debug(f"Condition on '{condition.field}' evaluated False: {e}")
        return False


def trace_conditions(
    conditions: Sequence[Condition], facts: Fact | Mapping[str, Any]
) -> tuple[bool, list[ConditionTrace]]:
    """Evaluate conditions left to right and return the result with a trace.

    An empty condition list matches.
    """
    variables = _variables(facts)
    result: bool | None = None
    traces: list[ConditionTrace] = []

    for index, condition in enumerate(conditions):
        outcome = evaluate_condition(condition, variables)
        traces.append(
            ConditionTrace(
                condition_id=condition.id,
                field=condition.field,
                operator=condition.operator.value,
                expected_value=condition.value,
                actual_value=variables.get(condition.field),
                result=outcome,
                logical_operator=(
                    condition.logical_operator.value if condition.logical_operator else None
                ),
            )
        )
        if index == 0 or result is None:
            result = outcome
            continue
        combinator = condition.logical_operator or LogicalOperator.AND
        if combinator is LogicalOperator.AND:
            result = result and outcome
        else:
            result = result or outcome

    return (True if result is None else result), traces


def evaluate_conditions(
    conditions: Sequence[Condition], facts: Fact | Mapping[str, Any]
) -> bool:
    """Evaluate an ordered condition list against facts."""
    result, _ = trace_conditions(conditions, facts)
    return result


def missing_logical_operators(conditions: Iterable[Condition]) -> list[int]:
    """Indexes of non-first conditions that omit ``logicalOperator``."""
    return [
        index
        for index, condition in enumerate(conditions)
        if index > 0 and condition.logical_operator is None
    ]
