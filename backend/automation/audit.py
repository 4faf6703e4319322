"""Append-only audit log for automation events.

Entries share the column shape of the HIPAA ``audit_logs`` table plus a
``sequence`` column and a ``level``. Producers call :meth:`AuditLog.record`
from any thread; a single writer thread persists entries in sequence
order. When the database is unavailable, entries stay in a local buffer
and the writer retries with backoff, so nothing is dropped and producers
never block on I/O.
"""

from __future__ import annotations

import json
import logging
import queue
import re
import sqlite3
import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable

from .models import AuditLogLevel, AuditSettings

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Compared after lowercasing and stripping non-letters, so camelCase and
# snake_case spellings both match.
PERSONAL_FIELDS = frozenset(
    {
        "patientname",
        "patientdob",
        "dob",
        "dateofbirth",
        "ssn",
        "socialsecuritynumber",
        "memberid",
        "mrn",
        "medicalrecordnumber",
        "phone",
        "phonenumber",
        "email",
        "address",
        "patientaddress",
        "firstname",
        "lastname",
    }
)

RECENT_EXECUTIONS = 100


class AuditEvent(str, Enum):
    """Auditable automation events."""

    TRIGGER_EXECUTED = "trigger_executed"
    TRIGGER_FAILED = "trigger_failed"
    ACTION_EXECUTED = "action_executed"
    ACTION_FAILED = "action_failed"
    ACTION_SKIPPED = "action_skipped"
    ACTION_DEFERRED = "action_deferred"
    ACTION_DEAD_LETTERED = "action_dead_lettered"
    EXECUTION_TIMEOUT = "execution_timeout"
    THRESHOLD_VIOLATED = "threshold_violated"
    THRESHOLD_CLEARED = "threshold_cleared"
    REMEDIATION_EXECUTED = "remediation_executed"
    REMEDIATION_PENDING = "remediation_pending"
    TASK_APPROVED = "task_approved"
    ESCALATION_TRIGGERED = "escalation_triggered"
    ESCALATION_EXHAUSTED = "escalation_exhausted"
    VIOLATION_RESOLVED = "violation_resolved"
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_QUEUED = "notification_queued"
    NOTIFICATION_SUPPRESSED = "notification_suppressed"
    NOTIFICATION_FAILED = "notification_failed"
    BUSINESS_RULE_MATCHED = "business_rule_matched"
    BILLING_SUBMITTED = "billing_submitted"
    BILLING_HELD = "billing_held"
    CONFIGURATION_CHANGED = "configuration_changed"
    CONFIGURATION_REJECTED = "configuration_rejected"
    COUNTERS_RESET = "counters_reset"
    SCHEDULE_ERROR = "schedule_error"
    QUEUE_REJECTED = "queue_rejected"
    DEAD_LETTER_REPLAYED = "dead_letter_replayed"
    DEAD_LETTER_DISCARDED = "dead_letter_discarded"
    AUDIT_EXPORTED = "audit_exported"
    AUDIT_PURGED = "audit_purged"


# Alerts bypass the level threshold and the event filter.
ALERT_EVENTS = frozenset(
    {
        AuditEvent.ACTION_DEAD_LETTERED,
        AuditEvent.ESCALATION_EXHAUSTED,
        AuditEvent.SCHEDULE_ERROR,
        AuditEvent.QUEUE_REJECTED,
        AuditEvent.EXECUTION_TIMEOUT,
    }
)
ALERT_EVENT_NAMES = frozenset(event.value for event in ALERT_EVENTS)


@dataclass(frozen=True)
class AuditEntry:
    """One immutable audit record."""

    id: str
    sequence: int
    timestamp: str
    action: str
    level: str = AuditLogLevel.INFO.value
    user_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict[str, Any] | None = None
    status: str = "success"
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _normalize_key(key: str) -> str:
    return re.sub(r"[^a-z]", "", key.lower())


def redact(value: Any) -> Any:
    """Replace personal fields with a marker, recursively."""
    if isinstance(value, dict):
        return {
            key: REDACTED
            if isinstance(key, str) and _normalize_key(key) in PERSONAL_FIELDS
            else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


_COLUMNS = (
    "id, sequence, timestamp, action, level, user_id, resource_type, "
    "resource_id, details, status, error_message"
)


@dataclass
class AuditFilters:
    """Query filters for listing and exporting entries."""

    action: str | None = None
    level: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    status: str | None = None
    start_date: str | None = None
    end_date: str | None = None

    def where(self) -> tuple[str, list[Any]]:
        conditions = []
        params: list[Any] = []
        # Column names are fixed; values are parameterized.
        for column in ("action", "level", "resource_type", "resource_id", "status"):
            value = getattr(self, column)
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)
        if self.start_date:
            conditions.append("timestamp >= ?")
            params.append(self.start_date)
        if self.end_date:
            conditions.append("timestamp <= ?")
            params.append(self.end_date)
        return (" AND ".join(conditions) if conditions else "1=1"), params

    def applied(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "level": self.level,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "status": self.status,
            "start_date": self.start_date,
            "end_date": self.end_date,
        }


class AuditLog:
    """Single-writer audit log backed by sqlite."""

    def __init__(
        self,
        db_path: str,
        settings: Callable[[], AuditSettings] | None = None,
        clock: Callable[[], datetime] | None = None,
        sink: Callable[[list[AuditEntry]], None] | None = None,
        retry_delay: float = 0.5,
        max_retry_delay: float = 30.0,
    ) -> None:
        """Initialize the audit log and start its writer thread.

        Args:
            db_path: Path to SQLite database
            settings: Returns the current audit settings (read per record)
            clock: Time source, UTC
            sink: Replaces the sqlite insert; used to simulate outages
            retry_delay: Initial backoff after a failed write, seconds
            max_retry_delay: Backoff ceiling, seconds
        """
        self.db_path = db_path
        self._settings = settings or AuditSettings
        self._clock = clock or _utcnow
        self._sink = sink or self._insert
        self._retry_delay = retry_delay
        self._max_retry_delay = max_retry_delay

        self._lock = threading.Lock()
        self._outstanding = 0
        self._drained = threading.Condition(self._lock)
        self._queue: queue.Queue[AuditEntry] = queue.Queue()
        self._buffer: list[AuditEntry] = []
        self._executions: deque[dict[str, Any]] = deque(maxlen=RECENT_EXECUTIONS)
        self._stop = threading.Event()
        self._abandon = False

        self._ensure_table()
        self._sequence = self._last_sequence()

        self._writer = threading.Thread(target=self._run, name="audit-writer", daemon=True)
        self._writer.start()

    # --- schema ---

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_table(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_conn()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id TEXT PRIMARY KEY,
                    sequence INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    action TEXT NOT NULL,
                    level TEXT DEFAULT 'info',
                    user_id TEXT,
                    resource_type TEXT,
                    resource_id TEXT,
                    details TEXT,
                    status TEXT DEFAULT 'success',
                    error_message TEXT
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_sequence ON audit_logs(sequence)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_logs(timestamp)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_action_time ON audit_logs(action, timestamp)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_resource ON audit_logs(resource_type, resource_id)"
            )
            conn.commit()
        finally:
            conn.close()

    def _last_sequence(self) -> int:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT MAX(sequence) FROM audit_logs").fetchone()
            return int(row[0] or 0)
        finally:
            conn.close()

    # --- producers ---

    def _accepts(self, event: str, level: AuditLogLevel) -> bool:
        settings = self._settings()
        if level is AuditLogLevel.ERROR or event in ALERT_EVENT_NAMES:
            return True
        if not settings.enabled:
            return False
        if level.rank < settings.log_level.rank:
            return False
        if settings.audit_events and event not in settings.audit_events:
            return False
        return True

    def record(
        self,
        event: AuditEvent | str,
        *,
        level: AuditLogLevel = AuditLogLevel.INFO,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
        status: str = "success",
        error_message: str | None = None,
        user_id: str | None = None,
    ) -> AuditEntry | None:
        """Queue an audit entry.

        Returns the entry, or None when the current settings filter it out.
        Errors and alerts are always recorded.
        """
        action = event.value if isinstance(event, AuditEvent) else str(event)
        if not self._accepts(action, level):
            return None

        if details is not None and not self._settings().include_personal_data:
            details = redact(details)

        with self._lock:
            self._sequence += 1
            entry = AuditEntry(
                id=str(uuid.uuid4()),
                sequence=self._sequence,
                timestamp=_timestamp(self._clock()),
                action=action,
                level=level.value,
                user_id=user_id,
                resource_type=resource_type,
                resource_id=resource_id,
                details=details,
                status=status,
                error_message=error_message,
            )
            self._outstanding += 1
            # Enqueue under the lock so queue order matches sequence order.
            self._queue.put(entry)
        return entry

    def record_execution(self, record: dict[str, Any]) -> None:
        """Keep an execution summary for the monitor view."""
        if not self._settings().include_personal_data:
            record = redact(record)
        with self._lock:
            self._executions.append(record)

    def recent_executions(self, limit: int = RECENT_EXECUTIONS) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._executions)
        return list(reversed(items))[:limit]

    # --- writer ---

    def _insert(self, entries: list[AuditEntry]) -> None:
        conn = self._get_conn()
        try:
            conn.executemany(
                f"INSERT INTO audit_logs ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        e.id,
                        e.sequence,
                        e.timestamp,
                        e.action,
                        e.level,
                        e.user_id,
                        e.resource_type,
                        e.resource_id,
                        json.dumps(e.details, default=str) if e.details else None,
                        e.status,
                        e.error_message,
                    )
                    for e in entries
                ],
            )
            conn.commit()
        finally:
            conn.close()

    def _drain_queue(self) -> None:
        while True:
            try:
                self._buffer.append(self._queue.get_nowait())
            except queue.Empty:
                return

    def _run(self) -> None:
        backoff = self._retry_delay
        while True:
            if not self._buffer:
                try:
                    self._buffer.append(self._queue.get(timeout=0.1))
                except queue.Empty:
                    if self._stop.is_set():
                        return
                    continue
            self._drain_queue()

            batch = list(self._buffer)
            try:
                self._sink(batch)
            except Exception as e:
                logger.warning(
                    f"Audit write failed, {len(batch)} entries buffered: {e}"
                )
                if self._stop.wait(backoff) and self._abandon:
                    return
                backoff = min(backoff * 2, self._max_retry_delay)
                continue

            backoff = self._retry_delay
            del self._buffer[: len(batch)]
            with self._drained:
                self._outstanding -= len(batch)
                self._drained.notify_all()

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until every queued entry is persisted.

        Returns:
            True if the log drained within ``timeout``
        """
        with self._drained:
            return self._drained.wait_for(lambda: self._outstanding == 0, timeout=timeout)

    @property
    def pending(self) -> int:
        with self._lock:
            return self._outstanding

    def close(self, timeout: float = 5.0) -> None:
        """Flush and stop the writer thread."""
        drained = self.flush(timeout)
        if not drained:
            logger.warning(f"Audit log closed with {self.pending} unwritten entries")
            self._abandon = True
        self._stop.set()
        self._writer.join(timeout=timeout)

    # --- queries ---

    def _row_to_entry(self, row: sqlite3.Row) -> AuditEntry:
        details = None
        if row["details"]:
            try:
                details = json.loads(row["details"])
            except json.JSONDecodeError:
                details = {"raw": row["details"]}
        return AuditEntry(
            id=row["id"],
            sequence=row["sequence"],
            timestamp=row["timestamp"],
            action=row["action"],
            level=row["level"] or AuditLogLevel.INFO.value,
            user_id=row["user_id"],
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            details=details,
            status=row["status"] or "success",
            error_message=row["error_message"],
        )

    def list_entries(
        self, filters: AuditFilters | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[AuditEntry], int]:
        """Entries newest first, plus the total matching count."""
        where_clause, params = (filters or AuditFilters()).where()
        conn = self._get_conn()
        try:
            total = conn.execute(
                f"SELECT COUNT(*) FROM audit_logs WHERE {where_clause}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM audit_logs
                WHERE {where_clause}
                ORDER BY sequence DESC
                LIMIT ? OFFSET ?
                """,
                params + [limit, offset],
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_entry(row) for row in rows], total

    def stats(self, filters: AuditFilters | None = None) -> dict[str, Any]:
        where_clause, params = (filters or AuditFilters()).where()
        conn = self._get_conn()
        try:
            cursor = conn.cursor()
            cursor.execute(f"SELECT COUNT(*) FROM audit_logs WHERE {where_clause}", params)
            total_entries = cursor.fetchone()[0]

            cursor.execute(
                f"SELECT action, COUNT(*) FROM audit_logs WHERE {where_clause} GROUP BY action",
                params,
            )
            by_action = {row[0]: row[1] for row in cursor.fetchall()}

            cursor.execute(
                f"""
                SELECT COALESCE(status, 'success'), COUNT(*) FROM audit_logs
                WHERE {where_clause}
                GROUP BY status
                """,
                params,
            )
            by_status = {row[0]: row[1] for row in cursor.fetchall()}

            cursor.execute(
                f"""
                SELECT COALESCE(level, 'info'), COUNT(*) FROM audit_logs
                WHERE {where_clause}
                GROUP BY level
                """,
                params,
            )
            by_level = {row[0]: row[1] for row in cursor.fetchall()}

            cursor.execute(
                f"SELECT MIN(timestamp), MAX(timestamp) FROM audit_logs WHERE {where_clause}",
                params,
            )
            row = cursor.fetchone()
        finally:
            conn.close()

        return {
            "total_entries": total_entries,
            "entries_by_action": by_action,
            "entries_by_status": by_status,
            "entries_by_level": by_level,
            "date_range": {"earliest": row[0] or "", "latest": row[1] or ""},
        }

    def export_rows(self, filters: AuditFilters | None = None, limit: int = 10000) -> list[AuditEntry]:
        entries, _ = self.list_entries(filters, limit=limit, offset=0)
        return entries

    def purge(self, retention_days: int | None = None, now: datetime | None = None) -> int:
        """Delete entries older than the retention window.

        Returns:
            Number of entries deleted
        """
        days = retention_days if retention_days is not None else self._settings().retention_days
        cutoff = _timestamp((now or self._clock()) - timedelta(days=days))
        conn = self._get_conn()
        try:
            cursor = conn.execute("DELETE FROM audit_logs WHERE timestamp < ?", (cutoff,))
            conn.commit()
            deleted = cursor.rowcount
        finally:
            conn.close()
        if deleted:
            logger.info(f"Purged {deleted} audit entries older than {days} days")
            self.record(
                AuditEvent.AUDIT_PURGED,
                resource_type="audit_logs",
                details={"deleted": deleted, "retention_days": days},
            )
        return deleted


def event_catalog() -> dict[str, Any]:
    """Event names grouped by their leading word."""
    categories: dict[str, list[str]] = {}
    for event in AuditEvent:
        categories.setdefault(event.value.split("_", 1)[0], []).append(event.value)
    return {
        "actions": [event.value for event in AuditEvent],
        "alerts": sorted(event.value for event in ALERT_EVENTS),
        "categories": categories,
    }


def iter_csv_rows(entries: Iterable[AuditEntry]) -> Iterable[list[Any]]:
    yield [
        "ID",
        "Sequence",
        "Timestamp",
        "Action",
        "Level",
        "User ID",
        "Resource Type",
        "Resource ID",
        "Details",
        "Status",
        "Error Message",
    ]
    for e in entries:
        yield [
            e.id,
            e.sequence,
            e.timestamp,
            e.action,
            e.level,
            e.user_id,
            e.resource_type,
            e.resource_id,
            json.dumps(e.details, default=str) if e.details else "",
            e.status,
            e.error_message,
        ]
