"""Guard expressions: a closed comparison grammar, never evaluated as code.

Grammar::

    expression := comparison ( combinator comparison )*
    comparison := FIELD OP LITERAL
    combinator := "and" | "or" | "&&" | "||"
    OP         := "==" | "===" | "!=" | "!==" | ">" | ">=" | "<" | "<="
    LITERAL    := NUMBER | 'string' | "string" | true | false

Comparisons fold left to right exactly like trigger conditions, so a
guard compiles to an ordered tuple of :class:`Condition` objects and is
evaluated by the same evaluator.

Example::

    >>> evaluate_guard("violation_count > 5", {"violation_count": 6})
    True
    >>> evaluate_guard("insurance_type === 'Medicare' && visit_count < 5",
    ...                {"insurance_type": "Medicare", "visit_count": 3})
    True
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Mapping

from .conditions import evaluate_conditions
from .errors import GuardSyntaxError
from .facts import Fact
from .models import Condition, ConditionOperator, DataType, LogicalOperator

_TOKEN_PATTERN = re.compile(
    r"""
    \s*(?:
        (?P<op>===|!==|==|!=|>=|<=|>|<)
      | (?P<comb>&&|\|\|)
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<word>[A-Za-z_][A-Za-z0-9_.]*)
    )
    """,
    re.VERBOSE,
)

_OPERATORS = {
    "==": ConditionOperator.EQUALS,
    "===": ConditionOperator.EQUALS,
    "!=": ConditionOperator.NOT_EQUALS,
    "!==": ConditionOperator.NOT_EQUALS,
    ">": ConditionOperator.GREATER_THAN,
    ">=": ConditionOperator.GREATER_THAN_OR_EQUAL,
    "<": ConditionOperator.LESS_THAN,
    "<=": ConditionOperator.LESS_THAN_OR_EQUAL,
}

_COMBINATORS = {
    "&&": LogicalOperator.AND,
    "and": LogicalOperator.AND,
    "||": LogicalOperator.OR,
    "or": LogicalOperator.OR,
}


def _tokenize(expression: str) -> list[tuple[str, str, int]]:
    tokens: list[tuple[str, str, int]] = []
    position = 0
    text = expression.rstrip()
    while position < len(text):
        match = _TOKEN_PATTERN.match(text, position)
        if not match or match.end() == position:
            raise GuardSyntaxError(
                f"Unexpected character at position {position}", expression, position
            )
        kind = match.lastgroup or ""
        tokens.append((kind, match.group(kind), match.start(kind)))
        position = match.end()
    return tokens


def _literal(kind: str, raw: str, expression: str, position: int) -> tuple[Any, DataType]:
    if kind == "number":
        return float(raw), DataType.NUMBER
    if kind == "string":
        body = raw[1:-1]
        return re.sub(r"\\(.)", r"\1", body), DataType.STRING
    if kind == "word" and raw.lower() in ("true", "false"):
        return raw.lower() == "true", DataType.BOOLEAN
    raise GuardSyntaxError(f"Expected a literal, got '{raw}'", expression, position)


@lru_cache(maxsize=512)
def parse_guard(expression: str) -> tuple[Condition, ...]:
    """Compile a guard expression into an ordered condition tuple.

    Raises:
        GuardSyntaxError: If the expression is outside the grammar.
    """
    if not expression or not expression.strip():
        raise GuardSyntaxError("Guard expression is empty", expression or "")

    tokens = _tokenize(expression)
    conditions: list[Condition] = []
    combinator: LogicalOperator | None = None
    index = 0

    while index < len(tokens):
        if index + 2 >= len(tokens):
            position = tokens[index][2]
            raise GuardSyntaxError("Incomplete comparison", expression, position)

        (field_kind, field_name, field_pos) = tokens[index]
        (op_kind, op_raw, op_pos) = tokens[index + 1]
        (lit_kind, lit_raw, lit_pos) = tokens[index + 2]

        if field_kind != "word" or field_name.lower() in ("and", "or", "true", "false"):
            raise GuardSyntaxError(
                f"Expected a field name, got '{field_name}'", expression, field_pos
            )
        if op_kind != "op":
            raise GuardSyntaxError(f"Expected an operator, got '{op_raw}'", expression, op_pos)

        value, data_type = _literal(lit_kind, lit_raw, expression, lit_pos)
        conditions.append(
            Condition(
                field=field_name,
                operator=_OPERATORS[op_raw],
                value=value,
                data_type=data_type,
                logical_operator=combinator,
            )
        )
        index += 3

        if index < len(tokens):
            (comb_kind, comb_raw, comb_pos) = tokens[index]
            key = comb_raw.lower() if comb_kind == "word" else comb_raw
            if key not in _COMBINATORS:
                raise GuardSyntaxError(
                    f"Expected 'and'/'or', got '{comb_raw}'", expression, comb_pos
                )
            combinator = _COMBINATORS[key]
            index += 1
            if index >= len(tokens):
                raise GuardSyntaxError("Dangling combinator", expression, comb_pos)

    return tuple(conditions)


def evaluate_guard(expression: str | None, variables: Fact | Mapping[str, Any]) -> bool:
    """Evaluate a guard; an absent guard always passes."""
    if expression is None or not expression.strip():
        return True
    return evaluate_conditions(parse_guard(expression), variables)


def guard_error(expression: str | None) -> str | None:
    """Return a parse error message, or None when the guard is valid."""
    if expression is None:
        return None
    try:
        parse_guard(expression)
    except GuardSyntaxError as e:
        return str(e)
    return None
