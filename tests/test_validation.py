"""Tests for configuration document validation."""

from __future__ import annotations

import pytest

from automation.errors import ConfigValidationError
from automation.validation import parse_configuration, validate_configuration


def _errors(document) -> list[str]:
    result = validate_configuration(document)
    assert not result.valid
    return result.errors


def _has(errors: list[str], fragment: str) -> bool:
    return any(fragment in error for error in errors)


class TestValidDocuments:
    def test_default_document_is_valid(self, document):
        result = validate_configuration(document)
        assert result.valid, result.errors
        assert result.errors == []
        assert result.config.version == "1.0.0"

    def test_parse_returns_config(self, document):
        config = parse_configuration(document)
        assert [t.id for t in config.triggers] == ["trigger_episode_complete", "trigger_auth_expiry"]
        assert config.trigger("trigger_auth_expiry").schedule.timezone == "America/New_York"

    def test_snake_case_keys_are_accepted(self, document):
        rule = document["config"]["businessRules"][0]
        rule["effective_date"] = rule.pop("effectiveDate")
        assert validate_configuration(document).valid

    def test_snake_case_required_keys(self, document):
        """Required keys may use either spelling, like every other field."""
        trigger = document["triggers"][0]
        trigger["trigger_type"] = trigger.pop("triggerType")
        config = document["config"]
        config["minimum_compliance_score"] = config.pop("minimumComplianceScore")
        config["delay_before_submission"] = config.pop("delayBeforeSubmission")

        result = validate_configuration(document)
        assert result.valid, result.errors
        assert result.config.triggers[0].trigger_type.value == "episode_completion"
        assert result.config.config.minimum_compliance_score == 90


class TestShape:
    """Document-level messages."""

    def test_not_an_object(self):
        assert _errors(["not", "a", "document"]) == ["Configuration must be an object"]

    def test_missing_collections(self, document):
        del document["triggers"]
        document["thresholds"] = {"id": "x"}
        errors = _errors(document)
        assert "Triggers must be an array" in errors
        assert "Thresholds must be an array" in errors

    def test_trigger_required_fields(self, document):
        """Missing trigger fields are each reported once."""
        document["triggers"][0] = {"name": "", "conditions": "episode_status"}
        errors = _errors(document)
        assert errors == [
            "Trigger 0: ID is required",
            "Trigger 0: Name is required",
            "Trigger 0: Trigger type is required",
            "Trigger 0: Conditions must be an array",
            "Trigger 0: Actions must be an array",
        ]

    def test_threshold_fields(self, document):
        threshold = document["thresholds"][1]
        threshold["value"] = "10"
        threshold["unit"] = ""
        del threshold["severity"]
        errors = _errors(document)
        assert "Threshold 1: Value must be a number" in errors
        assert "Threshold 1: Unit is required" in errors
        assert "Threshold 1: Severity is required" in errors

    def test_auto_billing_section(self, document):
        config = document["config"]
        config["enabled"] = "yes"
        config["minimumComplianceScore"] = 120
        config["delayBeforeSubmission"] = -5
        errors = _errors(document)
        assert "Auto-billing enabled must be a boolean" in errors
        assert "Minimum compliance score must be a number between 0 and 100" in errors
        assert "Delay before submission must be a non-negative number" in errors

    def test_missing_auto_billing_section(self, document):
        del document["config"]
        assert "Auto-billing configuration is required" in _errors(document)

    def test_schema_errors_are_labelled(self, document):
        document["triggers"][0]["priority"] = "urgent"
        document["config"]["notificationSettings"]["rateLimiting"]["maxNotificationsPerHour"] = -1
        errors = _errors(document)
        assert _has(errors, "Trigger 0: priority:")
        assert _has(errors, "Config: notificationSettings.rateLimiting.maxNotificationsPerHour:")


class TestTriggerSemantics:
    def test_duplicate_trigger_id(self, document):
        document["triggers"].append(dict(document["triggers"][0]))
        assert "Trigger 2: Duplicate ID 'trigger_episode_complete'" in _errors(document)

    def test_logical_operator_required(self, document):
        del document["triggers"][0]["conditions"][1]["logicalOperator"]
        assert (
            "Trigger 0: Condition 1: Logical operator is required after the first condition"
            in _errors(document)
        )

    def test_condition_value_must_coerce(self, document):
        document["triggers"][0]["conditions"][1]["value"] = "eighty-five"
        assert _has(_errors(document), "Trigger 0: Condition 1: Value 'eighty-five' is not a valid number")

    def test_unsupported_trigger_action(self, document):
        document["triggers"][0]["actions"][0]["actionType"] = "call_api"
        assert "Trigger 0: Action 0: Unsupported action type 'call_api'" in _errors(document)

    def test_invalid_action_guard(self, document):
        document["triggers"][0]["actions"][1]["condition"] = "compliance_score >="
        assert _has(_errors(document), "Trigger 0: Action 1: Invalid condition:")

    def test_retry_policy(self, document):
        policy = document["triggers"][0]["actions"][0]["retryPolicy"]
        policy["initialDelay"] = 600
        policy["retryOn"] = ["network_error", "cosmic_rays"]
        errors = _errors(document)
        assert "Trigger 0: Action 0: Retry policy initial delay exceeds max delay" in errors
        assert "Trigger 0: Action 0: Unknown retry error kind 'cosmic_rays'" in errors

    def test_invalid_cron(self, document):
        document["triggers"][1]["schedule"]["expression"] = "61 * * * *"
        assert _has(_errors(document), "Trigger 1: Schedule: Invalid cron expression")


class TestThresholdSemantics:
    def test_expiration_before_effective(self, document):
        document["thresholds"][0]["expirationDate"] = "2023-12-31T00:00:00Z"
        assert "Threshold 0: Expiration date must be after effective date" in _errors(document)

    def test_remediation_action_type(self, document):
        document["thresholds"][0]["remediationActions"][1]["actionType"] = "generate_ub04"
        assert (
            "Threshold 0: Remediation action 1: Unsupported action type 'generate_ub04'"
            in _errors(document)
        )

    def test_escalation_level_above_max(self, document):
        document["thresholds"][0]["escalationRules"][0]["currentEscalationLevel"] = 5
        assert (
            "Threshold 0: Escalation rule 0: Current escalation level exceeds max escalations"
            in _errors(document)
        )


class TestSettingsSemantics:
    def test_holidays(self, document):
        document["config"]["holidaySchedule"].append("12/25/2024")
        assert "Holiday schedule entry '12/25/2024' must be YYYY-MM-DD" in _errors(document)

    def test_business_hours(self, document):
        hours = document["config"]["businessHours"]
        hours["timezone"] = "Nowhere/Land"
        hours["monday"]["start"] = "18:00"
        errors = _errors(document)
        assert _has(errors, "Business hours: Unknown timezone")
        assert "Business hours: Monday start must be before end" in errors

    def test_business_rule_condition(self, document):
        document["config"]["businessRules"][0]["condition"] = "visit_count <"
        assert _has(_errors(document), "Business rule 0: Invalid condition:")

    def test_undeclared_template_variable(self, document):
        template = document["config"]["notificationSettings"]["templates"][0]
        template["variables"] = ["patient_name", "total_charges"]
        assert "Template 0: Undeclared variable 'patient_id'" in _errors(document)


class TestParseConfiguration:
    def test_reports_every_problem(self, document):
        """One failed parse carries the full list."""
        document["config"]["enabled"] = "yes"
        document["triggers"][0]["actions"][0]["actionType"] = "call_api"
        document["config"]["holidaySchedule"].append("tomorrow")

        with pytest.raises(ConfigValidationError) as exc_info:
            parse_configuration(document)
        errors = exc_info.value.errors
        assert "Auto-billing enabled must be a boolean" in errors
        assert "Trigger 0: Action 0: Unsupported action type 'call_api'" in errors
        assert "Holiday schedule entry 'tomorrow' must be YYYY-MM-DD" in errors
