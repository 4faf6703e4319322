"""Tests for the automation engine: facts in, chains run, counters out."""

from __future__ import annotations

import httpx
import pytest

from automation.audit import AuditFilters
from automation.errors import ConfigValidationError
from automation.execution_queue import ExecutionRequest, RequestOrigin
from automation.executor import ChainStatus
from automation.facts import Fact, FactCategory
from automation.models import Action, Priority


def _trigger_doc(engine, trigger_id: str) -> dict:
    return next(t for t in engine.get_configuration()["triggers"] if t["id"] == trigger_id)


def _completion(clock, score: float = 92, **data) -> Fact:
    return Fact(
        subject_id="EP-1",
        category=FactCategory.EPISODE_COMPLETION,
        data={"episode_status": "completed", "compliance_score": score, "patient_id": "PT-1", **data},
        timestamp=clock(),
    )


def _auth_expiry(clock) -> Fact:
    return Fact(
        subject_id="EP-2",
        category=FactCategory.TIME_BASED,
        data={"days_until_auth_expiry": 3, "authorization_status": "active"},
        timestamp=clock(),
    )


class TestFactIngestion:
    def test_matching_fact_runs_chain_and_updates_stats(self, engine, clock, drain):
        """The episode trigger checks compliance, waits 30 minutes, then builds the UB-04."""
        (match,) = engine.ingest_fact(_completion(clock))
        assert match.trigger_id == "trigger_episode_complete"
        assert match.matched and match.accepted
        assert [trace.result for trace in match.traces] == [True, True]

        (first,) = drain(engine)
        assert first.status is ChainStatus.DEFERRED
        assert _trigger_doc(engine, "trigger_episode_complete")["triggerCount"] == 45

        clock.advance(minutes=30)
        (second,) = drain(engine)
        assert second.status is ChainStatus.COMPLETED

        trigger = _trigger_doc(engine, "trigger_episode_complete")
        assert trigger["triggerCount"] == 46
        assert trigger["successCount"] == 43
        assert trigger["lastTriggered"] == clock().isoformat()
        (document,) = engine.dispatcher.services.claims.documents
        assert document["formNumber"] == "UB04-PT-1"

        assert engine.audit.flush()
        entries, total = engine.audit.list_entries(AuditFilters(action="trigger_executed"))
        assert total == 1
        assert entries[0].resource_id == "trigger_episode_complete"

    def test_conditions_not_met(self, engine):
        """A score of 85 fails the strict greater-than condition."""
        fact = Fact(
            subject_id="EP-1",
            category=FactCategory.EPISODE_COMPLETION,
            data={"episode_status": "completed", "compliance_score": 85},
        )
        (match,) = engine.ingest_fact(fact)
        assert not match.matched
        assert match.request_id is None
        assert len(engine.queue) == 0

    def test_no_listeners_for_category(self, engine):
        fact = Fact(subject_id="EP-1", category=FactCategory.VISIT_COUNT, data={"visits": 3})
        assert engine.ingest_fact(fact) == []

    def test_disabled_trigger_ignores_facts(self, engine_factory, document, clock):
        document["triggers"][0]["enabled"] = False
        engine = engine_factory(document)
        assert engine.ingest_fact(_completion(clock)) == []

    def test_auto_billing_disabled_fails_the_chain(self, engine_factory, document, clock, drain):
        document["config"]["enabled"] = False
        document["triggers"][0]["actions"][1].pop("delay")
        engine = engine_factory(document)
        engine.ingest_fact(_completion(clock))

        (outcome,) = drain(engine)
        assert outcome.status is ChainStatus.FAILED
        assert "Auto-billing is disabled" in outcome.error
        assert _trigger_doc(engine, "trigger_episode_complete")["failureCount"] == 4


class TestQueueDisabled:
    def test_requests_run_on_the_calling_thread(self, engine_factory, document, clock):
        document["config"]["performanceSettings"]["queueSettings"]["enabled"] = False
        engine = engine_factory(document)

        (match,) = engine.ingest_fact(_auth_expiry(clock))

        assert match.accepted
        assert len(engine.queue) == 0
        (message,) = engine.notifications.outbox.messages()
        assert message.recipient.address == "authorization@company.com"
        (task,) = engine.dispatcher.services.tasks.list()
        assert task.title == "Renew Authorization"
        assert _trigger_doc(engine, "trigger_auth_expiry")["triggerCount"] == 13


class TestQueueLimits:
    def test_full_queue_rejects_and_alerts(self, engine_factory, document):
        document["config"]["performanceSettings"]["queueSettings"]["maxQueueSize"] = 1
        engine = engine_factory(document)

        def request() -> ExecutionRequest:
            return ExecutionRequest(
                origin=RequestOrigin.THRESHOLD,
                source_id="threshold_compliance_score",
                subject_id="EP-1",
                actions=(Action.model_validate({"actionType": "create_task"}),),
                priority=Priority.LOW,
            )

        assert engine.submit(request())
        assert not engine.submit(request())
        assert engine.audit.flush()
        entries, total = engine.audit.list_entries(AuditFilters(action="queue_rejected"))
        assert total == 1
        assert entries[0].error_message == "Execution queue is full"

    @pytest.fixture
    def tight_engine(self, engine_factory, document):
        """One queue slot and a low-priority episode trigger with a delayed UB-04."""
        document["config"]["performanceSettings"]["queueSettings"]["maxQueueSize"] = 1
        document["triggers"][0]["priority"] = "low"
        return engine_factory(document)

    def _urgent(self) -> ExecutionRequest:
        return ExecutionRequest(
            origin=RequestOrigin.THRESHOLD,
            source_id="threshold_compliance_score",
            subject_id="EP-2",
            actions=(Action.model_validate({"actionType": "create_task"}),),
            priority=Priority.HIGH,
        )

    def _assert_closed_out(self, engine, request):
        trigger = _trigger_doc(engine, "trigger_episode_complete")
        assert trigger["triggerCount"] == 46
        assert trigger["failureCount"] == 4
        assert [r["status"] for r in request.action_results] == [
            "succeeded",
            "deferred",
            "cancelled",
        ]
        (execution,) = engine.audit.recent_executions()
        assert execution["success"] is False
        assert execution["requestId"] == request.id

    def test_evicted_deferred_chain_is_closed_out(self, tight_engine, clock):
        tight_engine.ingest_fact(_completion(clock))
        request = tight_engine.queue.get(timeout=0)
        assert tight_engine.process(request).status is ChainStatus.DEFERRED

        assert tight_engine.submit(self._urgent())
        self._assert_closed_out(tight_engine, request)

    def test_deferral_rejected_by_a_full_queue_is_closed_out(self, tight_engine, clock):
        tight_engine.ingest_fact(_completion(clock))
        request = tight_engine.queue.get(timeout=0)
        assert tight_engine.submit(self._urgent())

        assert tight_engine.process(request).status is ChainStatus.DEFERRED
        assert len(tight_engine.queue) == 1
        self._assert_closed_out(tight_engine, request)


class TestTestTrigger:
    def test_dry_run_with_sample_data(self, engine):
        """Without data the sample episode is used and nothing is produced."""
        trigger = engine.config.trigger("trigger_episode_complete")
        report = engine.test_trigger(trigger)

        assert report["success"] is True
        assert report["dryRun"] is True
        assert report["testData"]["episode_id"] == "EP-TEST-001"
        assert [c["result"] for c in report["conditionsEvaluated"]] == [True, True]
        assert [a["actionId"] for a in report["actionsExecuted"]] == ["act_1", "act_2"]
        assert report["actionsExecuted"][1]["result"]["status"] == "would_be_generated"
        assert engine.dispatcher.services.claims.documents == []
        assert _trigger_doc(engine, "trigger_episode_complete")["triggerCount"] == 45

    def test_conditions_not_met_warning(self, engine):
        trigger = engine.config.trigger("trigger_episode_complete")
        report = engine.test_trigger(trigger, {"episode_status": "in_progress", "compliance_score": 99})

        assert report["success"] is False
        assert report["actionsExecuted"] == []
        assert report["warnings"] == ["Conditions not met - actions were not executed"]

    def test_live_run_counts(self, engine):
        trigger = engine.config.trigger("trigger_auth_expiry")
        report = engine.test_trigger(
            trigger,
            {"days_until_auth_expiry": 2, "authorization_status": "active", "subject_id": "EP-4"},
            dry_run=False,
        )
        assert report["success"] is True
        assert report["dryRun"] is False
        assert len(engine.notifications.outbox.messages()) == 1
        assert _trigger_doc(engine, "trigger_auth_expiry")["triggerCount"] == 13

    def test_disabled_trigger_warns(self, engine_factory, document):
        document["triggers"][1]["enabled"] = False
        engine = engine_factory(document)
        report = engine.test_trigger(engine.config.trigger("trigger_auth_expiry"))
        assert "Trigger is disabled" in report["warnings"]


class TestDeadLetterReplay:
    @pytest.fixture
    def flaky(self) -> dict:
        return {"up": False, "calls": 0}

    @pytest.fixture
    def dead_engine(self, engine_factory, flaky):
        def handler(request: httpx.Request) -> httpx.Response:
            flaky["calls"] += 1
            if not flaky["up"]:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        engine = engine_factory(http_client=httpx.Client(transport=httpx.MockTransport(handler)))
        request = ExecutionRequest(
            origin=RequestOrigin.THRESHOLD,
            source_id="threshold_compliance_score",
            subject_id="EP-9",
            actions=(
                Action.model_validate(
                    {"actionType": "call_webhook", "parameters": {"url": "https://hooks.example.com"}}
                ),
            ),
        )
        outcome = engine.process(request)
        assert outcome.status is ChainStatus.FAILED
        return engine

    def test_replay_requeues_the_action(self, dead_engine, flaky, drain):
        (entry,) = dead_engine.dead_letters.list_entries()
        flaky["up"] = True

        replay = dead_engine.replay_dead_letter(entry.id, "ops")
        assert replay["accepted"] is True
        assert replay["entry"]["status"] == "replayed"

        (outcome,) = drain(dead_engine)
        assert outcome.success
        assert flaky["calls"] == 4

        with pytest.raises(ValueError):
            dead_engine.replay_dead_letter(entry.id)

    def test_discard(self, dead_engine):
        (entry,) = dead_engine.dead_letters.list_entries()
        assert dead_engine.discard_dead_letter(entry.id)["status"] == "discarded"
        assert dead_engine.dead_letters.count("pending") == 0
        with pytest.raises(ValueError):
            dead_engine.discard_dead_letter(entry.id)

    def test_unknown_entry(self, engine):
        assert engine.replay_dead_letter("missing") is None
        assert engine.discard_dead_letter("missing") is None


class TestConfigurationChanges:
    def test_save_notifies_subscribed_recipients(self, engine, document):
        """Recipients subscribed to configuration_changed hear about new versions."""
        document["config"]["notificationSettings"]["recipients"][0]["notificationTypes"].append(
            "configuration_changed"
        )
        config = engine.save_configuration(document, "admin")

        assert config.version == "1.0.1"
        (message,) = engine.notifications.outbox.messages()
        assert message.recipient.address == "billing@company.com"
        assert message.subject == "Automation configuration updated to v1.0.1"
        assert "saved by admin" in message.body

        assert engine.audit.flush()
        entries, _ = engine.audit.list_entries(AuditFilters(action="configuration_changed"))
        assert entries[0].user_id == "admin"
        assert entries[0].details["previous_version"] == "1.0.0"

    def test_rejected_save_keeps_active_version(self, engine, document):
        document["thresholds"][0]["value"] = "high"
        with pytest.raises(ConfigValidationError):
            engine.save_configuration(document, "admin")
        assert engine.config.version == "1.0.0"

    def test_live_counters_survive_a_save(self, engine, document, clock):
        """A document carrying stale counters cannot lower the live ones."""
        document["config"]["performanceSettings"]["queueSettings"]["enabled"] = False
        engine.save_configuration(document)
        engine.ingest_fact(_auth_expiry(clock))

        engine.save_configuration(document)
        assert _trigger_doc(engine, "trigger_auth_expiry")["triggerCount"] == 13
        assert engine.config.trigger("trigger_auth_expiry").trigger_count == 13

    def test_queue_resized_on_save(self, engine, document):
        document["config"]["performanceSettings"]["maxConcurrentTriggers"] = 4
        document["config"]["performanceSettings"]["queueSettings"]["maxQueueSize"] = 5
        engine.save_configuration(document)
        assert engine.workers.size == 4
        assert engine.queue.stats()["maxSize"] == 5


class TestResets:
    def test_reset_trigger_stats(self, engine):
        engine.reset_trigger_stats("trigger_episode_complete", "admin")
        trigger = _trigger_doc(engine, "trigger_episode_complete")
        assert trigger["triggerCount"] == 0
        assert trigger["successCount"] == 0

    def test_reset_threshold_violations(self, engine):
        engine.reset_threshold_violations("threshold_compliance_score")
        threshold = engine.get_configuration()["thresholds"][0]
        assert threshold["violationCount"] == 0

    @pytest.mark.parametrize(
        "method", ["reset_trigger_stats", "reset_threshold_violations", "reset_rule_stats"]
    )
    def test_unknown_ids(self, engine, method):
        with pytest.raises(KeyError):
            getattr(engine, method)("does_not_exist")


class TestStatus:
    def test_monitor_view(self, engine):
        status = engine.status()
        assert status["running"] is False
        assert status["version"] == "1.0.0"
        assert [t["id"] for t in status["triggers"]] == [
            "trigger_episode_complete",
            "trigger_auth_expiry",
        ]
        assert status["triggers"][0]["nextRun"] is None
        assert status["deadLetters"] == 0
        assert status["pendingTasks"] == 0
        assert status["queue"]["size"] == 0
