"""Configuration document validation.

Validation runs in three passes and always reports the complete list of
problems:

1. Shape checks on the raw document, with the messages operators already
   know (``"Trigger 0: ID is required"``).
2. Schema validation through the pydantic models.
3. Semantic checks that need the parsed model: unique ids, logical
   operators, guard syntax, cron expressions, retry policies, dates,
   holidays and notification templates.

A document is only activated when all three passes are clean.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError
from pydantic.alias_generators import to_snake

from .conditions import CoercionError, coerce, missing_logical_operators
from .cron import cron_error, resolve_timezone
from .errors import ConfigValidationError, ErrorKind, SchedulingError
from .guards import guard_error
from .models import (
    REMEDIATION_ACTION_TYPES,
    TRIGGER_ACTION_TYPES,
    Action,
    AutomationConfig,
    ConditionOperator,
    EscalationRule,
    RetryPolicy,
)
from .notifications import template_variables

logger = logging.getLogger(__name__)

HOLIDAY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_ERROR_KINDS = {kind.value for kind in ErrorKind}

_COLLECTION_LABELS = {
    "triggers": "Trigger",
    "thresholds": "Threshold",
}


@dataclass
class ValidationResult:
    """Outcome of validating a configuration document."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    config: AutomationConfig | None = None


def _blank(value: Any) -> bool:
    return value is None or value == "" or value is False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _lookup(item: dict[str, Any], key: str) -> Any:
    """Value under a camelCase key or its snake_case spelling; both parse."""
    if key in item:
        return item[key]
    return item.get(to_snake(key))


def _shape_errors(data: dict[str, Any]) -> tuple[list[str], set[tuple[Any, ...]]]:
    """Document-level checks on the raw JSON.

    Returns the messages plus the locations they cover, so the schema pass
    does not report the same problem twice.
    """
    errors: list[str] = []
    covered: set[tuple[Any, ...]] = set()

    triggers = data.get("triggers")
    if not isinstance(triggers, list):
        errors.append("Triggers must be an array")
        covered.add(("triggers",))
    else:
        for index, trigger in enumerate(triggers):
            if not isinstance(trigger, dict):
                errors.append(f"Trigger {index}: Must be an object")
                covered.add(("triggers", index))
                continue
            for key, message in (
                ("id", "ID is required"),
                ("name", "Name is required"),
                ("triggerType", "Trigger type is required"),
            ):
                if _blank(_lookup(trigger, key)):
                    errors.append(f"Trigger {index}: {message}")
                    covered.add(("triggers", index, key))
            for key, message in (
                ("conditions", "Conditions must be an array"),
                ("actions", "Actions must be an array"),
            ):
                if not isinstance(_lookup(trigger, key), list):
                    errors.append(f"Trigger {index}: {message}")
                    covered.add(("triggers", index, key))

    thresholds = data.get("thresholds")
    if not isinstance(thresholds, list):
        errors.append("Thresholds must be an array")
        covered.add(("thresholds",))
    else:
        for index, threshold in enumerate(thresholds):
            if not isinstance(threshold, dict):
                errors.append(f"Threshold {index}: Must be an object")
                covered.add(("thresholds", index))
                continue
            for key, message in (
                ("id", "ID is required"),
                ("name", "Name is required"),
                ("category", "Category is required"),
            ):
                if _blank(_lookup(threshold, key)):
                    errors.append(f"Threshold {index}: {message}")
                    covered.add(("thresholds", index, key))
            if not _is_number(threshold.get("value")):
                errors.append(f"Threshold {index}: Value must be a number")
                covered.add(("thresholds", index, "value"))
            for key, message in (
                ("unit", "Unit is required"),
                ("severity", "Severity is required"),
            ):
                if _blank(_lookup(threshold, key)):
                    errors.append(f"Threshold {index}: {message}")
                    covered.add(("thresholds", index, key))

    config = data.get("config")
    if not isinstance(config, dict) or not config:
        errors.append("Auto-billing configuration is required")
        covered.add(("config",))
    else:
        if not isinstance(config.get("enabled"), bool):
            errors.append("Auto-billing enabled must be a boolean")
            covered.add(("config", "enabled"))
        score = _lookup(config, "minimumComplianceScore")
        if not _is_number(score) or score < 0 or score > 100:
            errors.append("Minimum compliance score must be a number between 0 and 100")
            covered.add(("config", "minimumComplianceScore"))
        delay = _lookup(config, "delayBeforeSubmission")
        if not _is_number(delay) or delay < 0:
            errors.append("Delay before submission must be a non-negative number")
            covered.add(("config", "delayBeforeSubmission"))

    return errors, covered


def _is_covered(loc: tuple[Any, ...], covered: set[tuple[Any, ...]]) -> bool:
    return any(loc[: len(prefix)] == prefix for prefix in covered)


def _format_pydantic_error(loc: tuple[Any, ...], msg: str) -> str:
    if len(loc) >= 2 and loc[0] in _COLLECTION_LABELS and isinstance(loc[1], int):
        prefix = f"{_COLLECTION_LABELS[loc[0]]} {loc[1]}"
        rest = loc[2:]
    elif loc and loc[0] == "config":
        prefix = "Config"
        rest = loc[1:]
    else:
        prefix = "Document"
        rest = loc
    path = ".".join(str(part) for part in rest)
    return f"{prefix}: {path}: {msg}" if path else f"{prefix}: {msg}"


def _retry_policy_errors(prefix: str, policy: RetryPolicy | None) -> list[str]:
    if policy is None:
        return []
    errors = []
    if policy.initial_delay > policy.max_delay:
        errors.append(f"{prefix}: Retry policy initial delay exceeds max delay")
    for kind in policy.retry_on:
        if kind not in _ERROR_KINDS:
            errors.append(f"{prefix}: Unknown retry error kind '{kind}'")
    return errors


def _action_errors(prefix: str, action: Action, allowed: frozenset) -> list[str]:
    errors = []
    if action.action_type not in allowed:
        errors.append(f"{prefix}: Unsupported action type '{action.action_type.value}'")
    message = guard_error(action.condition)
    if message:
        errors.append(f"{prefix}: Invalid condition: {message}")
    errors.extend(_retry_policy_errors(prefix, action.retry_policy))
    return errors


def _escalation_errors(prefix: str, rule: EscalationRule) -> list[str]:
    errors = []
    if rule.current_escalation_level > rule.max_escalations:
        errors.append(f"{prefix}: Current escalation level exceeds max escalations")
    message = guard_error(rule.condition)
    if message:
        errors.append(f"{prefix}: Invalid condition: {message}")
    return errors


def _duplicate_errors(label: str, ids: list[str]) -> list[str]:
    seen: set[str] = set()
    errors = []
    for index, item_id in enumerate(ids):
        if item_id in seen:
            errors.append(f"{label} {index}: Duplicate ID '{item_id}'")
        seen.add(item_id)
    return errors


def _semantic_errors(config: AutomationConfig) -> list[str]:
    errors: list[str] = []

    errors.extend(_duplicate_errors("Trigger", [t.id for t in config.triggers]))
    errors.extend(_duplicate_errors("Threshold", [t.id for t in config.thresholds]))
    errors.extend(
        _duplicate_errors("Business rule", [r.id for r in config.config.business_rules])
    )

    for index, trigger in enumerate(config.triggers):
        prefix = f"Trigger {index}"
        for position in missing_logical_operators(trigger.conditions):
            errors.append(
                f"{prefix}: Condition {position}: Logical operator is required "
                "after the first condition"
            )
        for position, condition in enumerate(trigger.conditions):
            values = (
                condition.value
                if condition.operator in (ConditionOperator.IN, ConditionOperator.NOT_IN)
                and isinstance(condition.value, list)
                else [condition.value]
            )
            for value in values:
                try:
                    coerce(value, condition.data_type)
                except CoercionError:
                    errors.append(
                        f"{prefix}: Condition {position}: Value {value!r} is not a "
                        f"valid {condition.data_type.value}"
                    )
        for position, action in enumerate(trigger.actions):
            errors.extend(
                _action_errors(f"{prefix}: Action {position}", action, TRIGGER_ACTION_TYPES)
            )
        if trigger.schedule is not None:
            message = cron_error(trigger.schedule.expression, trigger.schedule.timezone)
            if message:
                errors.append(f"{prefix}: Schedule: {message}")

    for index, threshold in enumerate(config.thresholds):
        prefix = f"Threshold {index}"
        if threshold.expiration_date and threshold.expiration_date < threshold.effective_date:
            errors.append(f"{prefix}: Expiration date must be after effective date")
        for position, remediation in enumerate(threshold.remediation_actions):
            step = f"{prefix}: Remediation action {position}"
            if remediation.action_type not in REMEDIATION_ACTION_TYPES:
                errors.append(
                    f"{step}: Unsupported action type '{remediation.action_type.value}'"
                )
            errors.extend(_retry_policy_errors(step, remediation.retry_policy))
        for position, rule in enumerate(threshold.escalation_rules):
            errors.extend(_escalation_errors(f"{prefix}: Escalation rule {position}", rule))

    settings = config.config
    for holiday in settings.holiday_schedule:
        if not HOLIDAY_PATTERN.match(holiday):
            errors.append(f"Holiday schedule entry '{holiday}' must be YYYY-MM-DD")
    try:
        resolve_timezone(settings.business_hours.timezone)
    except SchedulingError as e:
        errors.append(f"Business hours: {e}")
    for weekday in range(7):
        hours = settings.business_hours.for_weekday(weekday)
        if hours.enabled and hours.start >= hours.end:
            day = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")[weekday]
            errors.append(f"Business hours: {day} start must be before end")

    for index, rule in enumerate(settings.business_rules):
        prefix = f"Business rule {index}"
        message = guard_error(rule.condition)
        if message:
            errors.append(f"{prefix}: Invalid condition: {message}")
        if rule.expiration_date and rule.expiration_date < rule.effective_date:
            errors.append(f"{prefix}: Expiration date must be after effective date")

    notification = settings.notification_settings
    for index, template in enumerate(notification.templates):
        declared = set(template.variables)
        used = template_variables(template.body) | template_variables(template.subject or "")
        for name in sorted(used - declared):
            errors.append(f"Template {index}: Undeclared variable '{name}'")
    for index, rule in enumerate(notification.escalation_rules):
        errors.extend(_escalation_errors(f"Notification escalation rule {index}", rule))

    return errors


def validate_configuration(data: Any) -> ValidationResult:
    """Validate a configuration document.

    Args:
        data: Raw document (camelCase JSON object)

    Returns:
        ValidationResult with every error found and, when valid, the parsed config
    """
    if not isinstance(data, dict):
        return ValidationResult(valid=False, errors=["Configuration must be an object"])

    errors, covered = _shape_errors(data)

    config: AutomationConfig | None = None
    try:
        config = AutomationConfig.model_validate(data)
    except ValidationError as e:
        for item in e.errors():
            loc = tuple(item["loc"])
            if not _is_covered(loc, covered):
                errors.append(_format_pydantic_error(loc, item["msg"]))

    if config is not None:
        errors.extend(_semantic_errors(config))

    if errors:
        logger.warning(f"Configuration rejected with {len(errors)} error(s)")
        return ValidationResult(valid=False, errors=errors)
    return ValidationResult(valid=True, config=config)


def parse_configuration(data: Any) -> AutomationConfig:
    """Validate and return the parsed configuration.

    Raises:
        ConfigValidationError: With the itemized error list.
    """
    result = validate_configuration(data)
    if not result.valid or result.config is None:
        raise ConfigValidationError("Configuration validation failed", result.errors)
    return result.config
