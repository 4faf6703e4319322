"""Dead-letter store for actions that exhausted their retries.

Entries are persisted in sqlite so they survive restarts and can be
inspected, replayed or discarded by an operator.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


class DeadLetterStatus(str, Enum):
    PENDING = "pending"
    REPLAYED = "replayed"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class DeadLetterEntry:
    id: str
    origin: str
    source_id: str
    subject_id: str
    action: dict[str, Any]
    context: dict[str, Any]
    error_message: str | None
    error_kind: str | None
    attempts: int
    status: str
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeadLetterStore:
    """sqlite-backed dead-letter queue."""

    def __init__(self, db_path: str, clock: Callable[[], datetime] | None = None) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database
            clock: Time source, UTC
        """
        self.db_path = db_path
        self._clock = clock or _utcnow
        self._ensure_tables()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_tables(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_conn()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS dead_letters (
                    id TEXT PRIMARY KEY,
                    origin TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    subject_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    context TEXT,
                    error_message TEXT,
                    error_kind TEXT,
                    attempts INTEGER DEFAULT 0,
                    status TEXT DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_dead_letters_status
                ON dead_letters(status)
            """)
            conn.commit()
        finally:
            conn.close()

    def _row_to_entry(self, row: sqlite3.Row) -> DeadLetterEntry:
        return DeadLetterEntry(
            id=row["id"],
            origin=row["origin"],
            source_id=row["source_id"],
            subject_id=row["subject_id"],
            action=json.loads(row["action"]),
            context=json.loads(row["context"]) if row["context"] else {},
            error_message=row["error_message"],
            error_kind=row["error_kind"],
            attempts=row["attempts"] or 0,
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def add(
        self,
        origin: str,
        source_id: str,
        subject_id: str,
        action: dict[str, Any],
        context: dict[str, Any],
        error_message: str | None,
        error_kind: str | None,
        attempts: int,
    ) -> DeadLetterEntry:
        """Persist a failed action.

        Returns:
            The stored entry
        """
        entry_id = str(uuid.uuid4())
        now = self._clock().isoformat()
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO dead_letters (
                    id, origin, source_id, subject_id, action, context,
                    error_message, error_kind, attempts, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry_id,
                    origin,
                    source_id,
                    subject_id,
                    json.dumps(action, default=str),
                    json.dumps(context, default=str),
                    error_message,
                    error_kind,
                    attempts,
                    DeadLetterStatus.PENDING.value,
                    now,
                    now,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        logger.warning(
            f"Dead-lettered {action.get('actionType')} for {origin} {source_id}: {error_message}"
        )
        return DeadLetterEntry(
            id=entry_id,
            origin=origin,
            source_id=source_id,
            subject_id=subject_id,
            action=action,
            context=context,
            error_message=error_message,
            error_kind=error_kind,
            attempts=attempts,
            status=DeadLetterStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )

    def get(self, entry_id: str) -> DeadLetterEntry | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM dead_letters WHERE id = ?", (entry_id,)).fetchone()
        finally:
            conn.close()
        return self._row_to_entry(row) if row else None

    def list_entries(
        self, status: DeadLetterStatus | str | None = None, limit: int = 100, offset: int = 0
    ) -> list[DeadLetterEntry]:
        """Entries newest first, optionally filtered by status."""
        query = "SELECT * FROM dead_letters"
        params: list[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(DeadLetterStatus(status).value)
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        conn = self._get_conn()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [self._row_to_entry(row) for row in rows]

    def count(self, status: DeadLetterStatus | str | None = None) -> int:
        conn = self._get_conn()
        try:
            if status:
                row = conn.execute(
                    "SELECT COUNT(*) FROM dead_letters WHERE status = ?",
                    (DeadLetterStatus(status).value,),
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM dead_letters").fetchone()
        finally:
            conn.close()
        return row[0]

    def mark(self, entry_id: str, status: DeadLetterStatus) -> DeadLetterEntry | None:
        """Move a pending entry to ``status``.

        Returns:
            The updated entry, or None if it does not exist or is not pending
        """
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                """
                UPDATE dead_letters
                SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (status.value, self._clock().isoformat(), entry_id, DeadLetterStatus.PENDING.value),
            )
            conn.commit()
            updated = cursor.rowcount
        finally:
            conn.close()
        if not updated:
            return None
        logger.info(f"Dead letter {entry_id} marked {status.value}")
        return self.get(entry_id)
