"""Tests for compliance thresholds, remediation and escalation."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from automation.conditions import CoercionError
from automation.execution_queue import RequestOrigin
from automation.models import ComplianceThreshold
from automation.runtime import ViolationStatus
from automation.thresholds import TaskStatus, applicability, is_violation, missing_documents

COVERED = {"insurance_type": "Medicare", "service_type": "Skilled Nursing", "subject_id": "EP-7"}


def _threshold(**overrides) -> ComplianceThreshold:
    data = {
        "id": "threshold_test",
        "name": "Test Threshold",
        "category": "documentation",
        "thresholdType": "minimum_score",
        "value": 90,
        "unit": "percentage",
        "severity": "medium",
        "effectiveDate": "2024-01-01T00:00:00Z",
    }
    data.update(overrides)
    return ComplianceThreshold.model_validate(data)


class TestIsViolation:
    def test_minimum_score_boundary(self):
        """Exactly at the minimum is compliant."""
        threshold = _threshold()
        assert is_violation(threshold, 89.9)
        assert not is_violation(threshold, 90)
        assert not is_violation(threshold, "95")

    def test_maximum_visits_boundary(self):
        threshold = _threshold(thresholdType="maximum_visits", value=10, unit="count")
        assert is_violation(threshold, 11)
        assert not is_violation(threshold, 10)

    def test_amount_and_time_limit_violate_above(self):
        assert is_violation(_threshold(thresholdType="amount", value=500, unit="dollars"), 500.01)
        assert is_violation(_threshold(thresholdType="time_limit", value=48, unit="hours"), 72)

    def test_required_documents(self):
        """Any listed document absent from the metric is a violation."""
        threshold = _threshold(
            thresholdType="required_documents",
            value=2,
            unit="count",
            requiredDocuments=["OASIS", "Plan of Care"],
        )
        assert is_violation(threshold, ["OASIS"])
        assert missing_documents(threshold, ["OASIS"]) == ["Plan of Care"]
        assert not is_violation(threshold, {"OASIS": True, "Plan of Care": True})
        assert is_violation(threshold, {"OASIS": True, "Plan of Care": False})

    def test_non_numeric_metric(self):
        with pytest.raises(CoercionError):
            is_violation(_threshold(), "not a score")


class TestApplicability:
    NOW = datetime(2024, 7, 10, 15, 0, tzinfo=timezone.utc)

    def test_applies(self):
        threshold = _threshold(applicableInsuranceTypes=["Medicare"])
        assert applicability(threshold, {"insurance_type": "Medicare"}, self.NOW) is None

    def test_empty_lists_apply_to_everyone(self):
        assert applicability(_threshold(), {}, self.NOW) is None

    def test_uncovered_insurance_and_service(self):
        threshold = _threshold(
            applicableInsuranceTypes=["Medicare"], applicableServiceTypes=["Skilled Nursing"]
        )
        assert "Insurance type" in applicability(threshold, {"insurance_type": "Private Pay"}, self.NOW)
        reason = applicability(threshold, {"insuranceType": "Medicare"}, self.NOW)
        assert "Service type" in reason

    def test_effective_window(self):
        future = _threshold(effectiveDate="2025-01-01T00:00:00Z")
        assert applicability(future, {}, self.NOW) == "Threshold is not yet effective"

        expired = _threshold(expirationDate="2024-06-30T00:00:00Z")
        assert applicability(expired, {}, self.NOW) == "Threshold has expired"

    def test_disabled(self):
        assert applicability(_threshold(enabled=False), {}, self.NOW) == "Threshold is disabled"


class TestRemediation:
    """Remediation runs automatically or waits for approval."""

    def test_automatic_remediation_is_one_request(self, engine, drain):
        """Both auto-execute steps of the compliance threshold share one request."""
        threshold = engine.config.threshold("threshold_compliance_score")
        result = engine.monitor.check_threshold(threshold, 82, COVERED)

        assert result.violated
        assert result.violation_count == 4
        assert result.status is ViolationStatus.OPEN
        assert [item["status"] for item in result.remediation] == ["dispatched", "dispatched"]
        assert result.remediation[0]["requestId"] == result.remediation[1]["requestId"]
        assert len(engine.queue) == 1

        (outcome,) = drain(engine)
        assert outcome.success
        (message,) = engine.notifications.outbox.messages()
        assert message.notification_type == "compliance_violation"
        assert message.recipient.address == "compliance@company.com"
        (task,) = engine.dispatcher.services.tasks.list()
        assert task.title == "Resolve Compliance Issues"

    def test_manual_remediation_waits_for_approval(self, engine):
        threshold = engine.config.threshold("threshold_skilled_nursing")
        result = engine.monitor.check_threshold(threshold, 12, COVERED)

        assert result.remediation == [
            {"remediationId": "rem_3", "status": "pending", "taskId": "rem_task_1"}
        ]
        assert len(engine.queue) == 0
        (pending,) = engine.monitor.tasks.list(status=TaskStatus.PENDING)
        assert pending.assigned_role == "clinical_manager"
        assert pending.priority == "high"

        approved = engine.monitor.approve_task("rem_task_1", "supervisor")
        assert approved.status is TaskStatus.APPROVED
        assert approved.approved_by == "supervisor"
        assert len(engine.queue) == 1
        request = engine.queue.get(timeout=0)
        assert request.origin is RequestOrigin.THRESHOLD
        assert request.actions[0].action_type.value == "send_notification"

        assert engine.monitor.approve_task("rem_task_1", "supervisor") is None

    def test_not_applicable_leaves_state_alone(self, engine):
        threshold = engine.config.threshold("threshold_skilled_nursing")
        result = engine.monitor.check_threshold(threshold, 15, {"insurance_type": "Medicaid"})
        assert not result.applicable
        assert engine.runtime.violation("threshold_skilled_nursing").violation_count == 1

    def test_back_within_limits_clears(self, engine):
        threshold = engine.config.threshold("threshold_skilled_nursing")
        engine.monitor.check_threshold(threshold, 12, COVERED)
        result = engine.monitor.check_threshold(threshold, 8, COVERED)

        assert not result.violated
        assert result.status is ViolationStatus.CLEAR
        assert result.violation_count == 2


class TestComplianceCheck:
    def test_metrics_by_id_or_type(self, engine):
        results = engine.compliance_check(
            {"minimum_score": 95, "threshold_skilled_nursing": 12}, COVERED
        )
        by_id = {result.threshold_id: result for result in results}
        assert not by_id["threshold_compliance_score"].violated
        assert by_id["threshold_skilled_nursing"].violated

    def test_unmatched_metrics_are_ignored(self, engine):
        assert engine.compliance_check({"unrelated": 1}, COVERED) == []


class TestEscalation:
    """Escalation of the compliance threshold's esc_1 rule (violation_count > 5)."""

    @pytest.fixture
    def threshold(self, engine) -> ComplianceThreshold:
        return engine.config.threshold("threshold_compliance_score")

    def _violate(self, engine, threshold, times: int = 1):
        result = None
        for _ in range(times):
            result = engine.monitor.check_threshold(threshold, 70, COVERED)
        return result

    def test_condition_gates_first_escalation(self, engine, threshold):
        result = self._violate(engine, threshold, times=2)
        assert result.violation_count == 5
        assert result.escalations == []

        result = self._violate(engine, threshold)
        assert result.violation_count == 6
        (escalation,) = result.escalations
        assert escalation["level"] == 1
        assert escalation["escalateTo"] == ["manager@company.com"]
        assert escalation["delivery"][0]["status"] == "sent"

        messages = [
            m for m in engine.notifications.outbox.messages()
            if m.notification_type == "threshold_escalation"
        ]
        assert len(messages) == 1
        assert "Escalation level 1" in messages[0].subject
        assert "6 violations" in messages[0].body

    def test_levels_respect_delay_then_exhaust(self, engine, threshold, clock):
        """Levels advance once per delay window; past the maximum the violation is unresolved."""
        self._violate(engine, threshold, times=3)

        # Still inside the 60-minute window
        assert self._violate(engine, threshold).escalations == []
        assert engine.monitor.tick() == []

        clock.advance(minutes=60)
        (second,) = engine.monitor.tick()
        assert second["level"] == 2

        clock.advance(minutes=60)
        (third,) = engine.monitor.tick()
        assert third["level"] == 3

        clock.advance(minutes=60)
        (final,) = engine.monitor.tick()
        assert final["exhausted"] is True
        state = engine.runtime.violation("threshold_compliance_score")
        assert state.status is ViolationStatus.UNRESOLVED

        result = self._violate(engine, threshold)
        assert result.status is ViolationStatus.UNRESOLVED
        assert result.reason == "Violation is unresolved and requires manual intervention"
        assert result.violation_count == 7
        clock.advance(minutes=60)
        assert engine.monitor.tick() == []

    def test_unresolved_violation_triggers_nothing_new(self, engine, threshold, clock):
        """Re-checking an unresolved violation queues no remediation and escalates no further."""
        self._violate(engine, threshold, times=3)
        for _ in range(3):
            clock.advance(minutes=60)
            engine.monitor.tick()
        state = engine.runtime.violation("threshold_compliance_score")
        assert state.status is ViolationStatus.UNRESOLVED

        queued = len(engine.queue)
        tasks = engine.monitor.tasks.list()
        messages = len(engine.notifications.outbox.messages())
        levels = {key: rule.level for key, rule in state.escalations.items()}

        for _ in range(3):
            result = self._violate(engine, threshold)
            assert result.remediation == []
            assert result.escalations == []
            clock.advance(minutes=60)
            assert engine.monitor.tick() == []

        state = engine.runtime.violation("threshold_compliance_score")
        assert len(engine.queue) == queued
        assert engine.monitor.tasks.list() == tasks
        assert len(engine.notifications.outbox.messages()) == messages
        assert {key: rule.level for key, rule in state.escalations.items()} == levels
        assert max(levels.values()) == 3

    def test_resolve_resets_levels(self, engine, threshold, clock):
        self._violate(engine, threshold, times=3)
        snapshot = engine.monitor.resolve_violation("threshold_compliance_score", "manager")

        assert snapshot["status"] == "clear"
        assert snapshot["escalations"]["esc_1"]["level"] == 0
        assert snapshot["violationCount"] == 6

        # The next violation escalates again from level 0
        (escalation,) = self._violate(engine, threshold).escalations
        assert escalation["level"] == 1

    def test_resolve_unknown_threshold(self, engine):
        with pytest.raises(KeyError):
            engine.monitor.resolve_violation("threshold_missing")

    def test_ticket_escalation_queues_a_task(self, engine_factory, document):
        rule = document["thresholds"][0]["escalationRules"][0]
        rule["actionType"] = "create_ticket"
        rule["condition"] = "violation_count > 3"
        engine = engine_factory(document)
        threshold = engine.config.threshold("threshold_compliance_score")

        result = engine.monitor.check_threshold(threshold, 70, COVERED)

        (escalation,) = result.escalations
        assert escalation["delivery"]["accepted"] is True
        # Remediation request plus the escalation ticket
        assert len(engine.queue) == 2
