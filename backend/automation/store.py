"""Versioned persistence of the automation configuration document.

Every accepted save appends a row to ``automation_config_versions`` and
swaps the in-memory snapshot. Readers call :meth:`ConfigStore.current`
per operation and always see one complete, validated document.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import yaml

from .defaults import default_document
from .errors import ConfigValidationError
from .models import AutomationConfig
from .validation import parse_configuration

logger = logging.getLogger(__name__)

ConfigListener = Callable[[AutomationConfig, AutomationConfig], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def bump_version(version: str | None) -> str:
    """Increment the last numeric component: ``1.0.3`` becomes ``1.0.4``."""
    if not version:
        return "1.0.0"
    parts = version.split(".")
    if parts[-1].isdigit():
        parts[-1] = str(int(parts[-1]) + 1)
        return ".".join(parts)
    return f"{version}.1"


def load_document_text(text: str, fmt: str = "json") -> dict[str, Any]:
    """Parse a configuration document from JSON or YAML text.

    Raises:
        ConfigValidationError: If the text does not parse to an object.
    """
    fmt = fmt.lower().lstrip(".")
    try:
        if fmt in ("yaml", "yml"):
            data = yaml.safe_load(text)
        elif fmt == "json":
            data = json.loads(text)
        else:
            raise ConfigValidationError(
                f"Unsupported config format: {fmt}", [f"Unsupported format '{fmt}'"]
            )
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigValidationError("Configuration could not be parsed", [str(e)]) from e
    if not isinstance(data, dict):
        raise ConfigValidationError(
            "Configuration could not be parsed", ["Configuration must be an object"]
        )
    return data


def load_document_file(path: str | Path) -> dict[str, Any]:
    """Load a configuration document from a ``.json``, ``.yaml`` or ``.yml`` file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    suffix = path.suffix.lower()
    if suffix not in (".json", ".yaml", ".yml"):
        raise ValueError(f"Unsupported config format: {suffix}")
    return load_document_text(path.read_text(encoding="utf-8"), suffix)


class ConfigStore:
    """Holds the active configuration snapshot and its saved versions.

    Attributes:
        db_path: Path to the SQLite database
        seed_path: Optional YAML/JSON document used when nothing is saved yet
    """

    def __init__(
        self,
        db_path: str,
        seed_path: str | Path | None = None,
        clock: Callable[[], datetime] | None = None,
        overlay: Callable[[AutomationConfig], dict[str, Any]] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
            seed_path: Seed document for an empty store
            clock: Time source, UTC
            overlay: Builds the document to persist from a validated config;
                the engine uses it to fold in live runtime counters
        """
        self.db_path = db_path
        self.seed_path = seed_path
        self._clock = clock or _utcnow
        self._overlay = overlay or (lambda config: config.to_document())
        self._lock = threading.RLock()
        self._current: AutomationConfig | None = None
        self._listeners: list[ConfigListener] = []
        self._init_tables()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_tables(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS automation_config_versions (
                    id TEXT PRIMARY KEY,
                    version TEXT NOT NULL,
                    document TEXT NOT NULL,
                    saved_at TEXT NOT NULL,
                    saved_by TEXT
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_config_versions_saved
                ON automation_config_versions(saved_at DESC)
            """)
            conn.commit()

    def _latest_document(self) -> dict[str, Any] | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                """
                SELECT document FROM automation_config_versions
                ORDER BY saved_at DESC, rowid DESC LIMIT 1
                """
            ).fetchone()
        finally:
            conn.close()
        return json.loads(row["document"]) if row else None

    def _persist(self, document: dict[str, Any], saved_by: str | None) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO automation_config_versions (id, version, document, saved_at, saved_by)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    document.get("version", "1.0.0"),
                    json.dumps(document, default=str),
                    self._clock().isoformat(),
                    saved_by,
                ),
            )
            conn.commit()

    def load(self) -> AutomationConfig:
        """Activate the latest saved version, else the seed file, else defaults.

        Raises:
            ConfigValidationError: If the seed document is invalid.
        """
        with self._lock:
            document = self._latest_document()
            source = "database"
            if document is None and self.seed_path:
                document = load_document_file(self.seed_path)
                source = str(self.seed_path)
            if document is None:
                document = default_document(self._clock())
                source = "defaults"

            config = parse_configuration(document)
            if source != "database":
                self._persist(config.to_document(), "system")
            self._current = config
        logger.info(f"Loaded automation configuration v{config.version} from {source}")
        return config

    def current(self) -> AutomationConfig:
        config = self._current
        if config is None:
            return self.load()
        return config

    def subscribe(self, listener: ConfigListener) -> None:
        """Call ``listener(old, new)`` after every accepted save."""
        self._listeners.append(listener)

    def save(self, data: dict[str, Any], user_id: str | None = None) -> AutomationConfig:
        """Validate, version, persist and activate a new document.

        Raises:
            ConfigValidationError: With every problem found; nothing changes.
        """
        parsed = parse_configuration(data)
        with self._lock:
            previous = self.current()
            document = self._overlay(parsed)
            document["version"] = bump_version(previous.version)
            document["lastUpdated"] = self._clock().isoformat()
            config = AutomationConfig.model_validate(document)
            self._persist(config.to_document(), user_id)
            self._current = config

        logger.info(
            f"Automation configuration v{config.version} saved by {user_id or 'anonymous'}"
        )
        for listener in list(self._listeners):
            listener(previous, config)
        return config

    def history(self, limit: int = 20) -> list[dict[str, Any]]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT id, version, saved_at, saved_by FROM automation_config_versions
                ORDER BY saved_at DESC, rowid DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        return [
            {
                "id": row["id"],
                "version": row["version"],
                "savedAt": row["saved_at"],
                "savedBy": row["saved_by"],
            }
            for row in rows
        ]
