"""Tests for the audit log."""

from __future__ import annotations

import csv
import io
import threading
from datetime import timedelta

import pytest

from automation.audit import (
    REDACTED,
    AuditEvent,
    AuditFilters,
    AuditLog,
    event_catalog,
    iter_csv_rows,
    redact,
)
from automation.models import AuditLogLevel, AuditSettings


@pytest.fixture
def settings() -> dict:
    """Mutable holder so tests can change settings between records."""
    return {"value": AuditSettings()}


@pytest.fixture
def audit(tmp_path, clock, settings):
    log = AuditLog(str(tmp_path / "audit.db"), settings=lambda: settings["value"], clock=clock)
    yield log
    log.close()


class TestRedact:
    def test_nested_personal_fields(self):
        details = {
            "patientName": "Jane Doe",
            "episode": {"patient_dob": "1950-01-01", "visits": 12},
            "contacts": [{"Email": "jane@example.com", "role": "family"}],
        }
        assert redact(details) == {
            "patientName": REDACTED,
            "episode": {"patient_dob": REDACTED, "visits": 12},
            "contacts": [{"Email": REDACTED, "role": "family"}],
        }

    def test_scalars_pass_through(self):
        assert redact("Jane Doe") == "Jane Doe"
        assert redact(None) is None


class TestRecording:
    def test_entries_are_sequenced_and_persisted(self, audit):
        first = audit.record(AuditEvent.TRIGGER_EXECUTED, resource_type="trigger", resource_id="t1")
        second = audit.record(AuditEvent.ACTION_EXECUTED, resource_type="action", resource_id="a1")
        assert second.sequence == first.sequence + 1

        assert audit.flush()
        entries, total = audit.list_entries()
        assert total == 2
        # Newest first
        assert [e.action for e in entries] == ["action_executed", "trigger_executed"]

    def test_concurrent_producers_keep_a_total_order(self, audit):
        """Sequence numbers are unique and gap-free across threads."""

        def produce():
            for _ in range(25):
                audit.record(AuditEvent.NOTIFICATION_SENT)

        threads = [threading.Thread(target=produce) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert audit.flush()
        entries, total = audit.list_entries(limit=200)
        assert total == 100
        assert sorted(e.sequence for e in entries) == list(range(1, 101))

    def test_personal_data_redacted_by_default(self, audit, settings):
        entry = audit.record(AuditEvent.BILLING_SUBMITTED, details={"patient_name": "Jane"})
        assert entry.details == {"patient_name": REDACTED}

        settings["value"] = AuditSettings(include_personal_data=True)
        entry = audit.record(AuditEvent.BILLING_SUBMITTED, details={"patient_name": "Jane"})
        assert entry.details == {"patient_name": "Jane"}

    def test_sequence_continues_after_reopen(self, tmp_path, clock):
        path = str(tmp_path / "audit.db")
        log = AuditLog(path, clock=clock)
        log.record(AuditEvent.TRIGGER_EXECUTED)
        log.record(AuditEvent.TRIGGER_EXECUTED)
        log.close()

        reopened = AuditLog(path, clock=clock)
        try:
            assert reopened.record(AuditEvent.TRIGGER_EXECUTED).sequence == 3
        finally:
            reopened.close()


class TestFiltering:
    """Level threshold, event list and the always-recorded kinds."""

    def test_below_level_is_dropped(self, audit, settings):
        settings["value"] = AuditSettings(log_level=AuditLogLevel.WARN)
        assert audit.record(AuditEvent.TRIGGER_EXECUTED) is None
        assert audit.record(AuditEvent.TRIGGER_FAILED, level=AuditLogLevel.WARN) is not None

    def test_event_list(self, audit, settings):
        settings["value"] = AuditSettings(audit_events=["billing_submitted"])
        assert audit.record(AuditEvent.TRIGGER_EXECUTED) is None
        assert audit.record(AuditEvent.BILLING_SUBMITTED) is not None

    def test_errors_and_alerts_bypass_filters(self, audit, settings):
        settings["value"] = AuditSettings(enabled=False)
        assert audit.record(AuditEvent.TRIGGER_EXECUTED) is None
        assert audit.record(AuditEvent.TRIGGER_FAILED, level=AuditLogLevel.ERROR) is not None
        assert audit.record(AuditEvent.ACTION_DEAD_LETTERED) is not None


class TestWriterOutage:
    def test_entries_buffer_until_the_sink_recovers(self, tmp_path, clock):
        """A failing store loses nothing and keeps the original order."""
        written = []
        failures = {"remaining": 2}

        def flaky_sink(batch):
            if failures["remaining"]:
                failures["remaining"] -= 1
                raise OSError("disk unavailable")
            written.extend(batch)

        log = AuditLog(
            str(tmp_path / "audit.db"), clock=clock, sink=flaky_sink, retry_delay=0.01
        )
        try:
            for _ in range(5):
                log.record(AuditEvent.NOTIFICATION_SENT)
            assert log.flush(timeout=5)
            assert log.pending == 0
            assert [e.sequence for e in written] == [1, 2, 3, 4, 5]
        finally:
            log.close()


class TestQueries:
    @pytest.fixture
    def populated(self, audit, clock):
        audit.record(AuditEvent.TRIGGER_EXECUTED, resource_type="trigger", resource_id="t1")
        clock.advance(hours=1)
        audit.record(
            AuditEvent.TRIGGER_FAILED,
            level=AuditLogLevel.ERROR,
            resource_type="trigger",
            resource_id="t1",
            status="failure",
            error_message="boom",
        )
        clock.advance(hours=1)
        audit.record(AuditEvent.BILLING_SUBMITTED, resource_type="claim", resource_id="EP-1")
        assert audit.flush()
        return audit

    def test_filters(self, populated):
        entries, total = populated.list_entries(AuditFilters(resource_type="trigger"))
        assert total == 2
        entries, total = populated.list_entries(AuditFilters(status="failure"))
        assert [e.error_message for e in entries] == ["boom"]

    def test_date_range(self, populated, clock):
        start = (clock() - timedelta(minutes=90)).isoformat()
        entries, total = populated.list_entries(AuditFilters(start_date=start))
        assert total == 2

    def test_pagination(self, populated):
        entries, total = populated.list_entries(limit=1, offset=1)
        assert total == 3
        assert entries[0].action == "trigger_failed"

    def test_stats(self, populated):
        stats = populated.stats()
        assert stats["total_entries"] == 3
        assert stats["entries_by_action"]["trigger_failed"] == 1
        assert stats["entries_by_status"] == {"success": 2, "failure": 1}
        assert stats["entries_by_level"] == {"info": 2, "error": 1}
        assert stats["date_range"]["earliest"] < stats["date_range"]["latest"]

    def test_csv_export(self, populated):
        buffer = io.StringIO()
        csv.writer(buffer).writerows(iter_csv_rows(populated.export_rows()))
        rows = list(csv.reader(io.StringIO(buffer.getvalue())))
        assert rows[0][0] == "ID"
        assert len(rows) == 4

    def test_purge(self, populated, clock):
        """Only entries past the retention window are deleted."""
        clock.advance(days=1)
        deleted = populated.purge(retention_days=1, now=clock() - timedelta(minutes=30))
        assert deleted == 2
        assert populated.flush()
        entries, total = populated.list_entries()
        assert {e.action for e in entries} == {"billing_submitted", "audit_purged"}


class TestRecentExecutions:
    def test_newest_first_and_redacted(self, audit):
        audit.record_execution({"triggerId": "t1", "patientName": "Jane"})
        audit.record_execution({"triggerId": "t2"})
        recent = audit.recent_executions()
        assert [r["triggerId"] for r in recent] == ["t2", "t1"]
        assert recent[1]["patientName"] == REDACTED


def test_event_catalog():
    catalog = event_catalog()
    assert "trigger_executed" in catalog["actions"]
    assert "schedule_error" in catalog["alerts"]
    assert "threshold_violated" in catalog["categories"]["threshold"]
