"""Pytest configuration and fixtures."""

from __future__ import annotations

import atexit
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest
import yaml

# Add backend to path for imports
backend_path = str(Path(__file__).parent.parent / "backend")
if backend_path not in sys.path:
    sys.path.insert(0, backend_path)

# Set test database path before importing app
# Use a temp file instead of :memory: so every component shares one database
_temp_db = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
_temp_db_path = _temp_db.name
os.environ["DB_PATH"] = _temp_db_path
# Tests drive the scheduler and queue by hand
os.environ["AUTOMATION_AUTOSTART"] = "false"

from automation.defaults import default_document  # noqa: E402
from automation.engine import BillingAutomationEngine  # noqa: E402
from automation.executor import ChainOutcome  # noqa: E402

# Wednesday 2024-07-10, 11:00 in New York: inside default business hours
START = datetime(2024, 7, 10, 15, 0, tzinfo=timezone.utc)


def _cleanup_test_db() -> None:
    """Clean up temporary test database file."""
    if os.path.exists(_temp_db_path):
        try:
            os.unlink(_temp_db_path)
        except OSError:
            pass  # File may already be deleted or locked


# Register cleanup to run at exit
atexit.register(_cleanup_test_db)


@pytest.fixture(scope="session", autouse=True)
def cleanup_test_db() -> None:
    """Pytest fixture to ensure test database cleanup after session."""
    yield
    _cleanup_test_db()


class FakeClock:
    """Settable UTC time source."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def document() -> dict[str, Any]:
    """A fresh copy of the built-in configuration document."""
    return default_document(START)


@pytest.fixture
def engine_factory(
    tmp_path: Path, clock: FakeClock
) -> Iterator[Callable[..., BillingAutomationEngine]]:
    """Build engines on their own database, optionally seeded with a document.

    Retry sleeps are skipped and the scheduler tick is long enough that
    tests drive it explicitly.
    """
    engines: list[BillingAutomationEngine] = []

    def make(seed: dict[str, Any] | None = None, **kwargs: Any) -> BillingAutomationEngine:
        index = len(engines)
        seed_path = None
        if seed is not None:
            seed_path = tmp_path / f"seed-{index}.yaml"
            seed_path.write_text(yaml.safe_dump(seed), encoding="utf-8")
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("sleep", lambda seconds: None)
        kwargs.setdefault("tick_seconds", 3600)
        engine = BillingAutomationEngine(
            str(tmp_path / f"automation-{index}.db"), seed_path=seed_path, **kwargs
        )
        engines.append(engine)
        return engine

    yield make

    for engine in engines:
        engine.close()


@pytest.fixture
def engine(engine_factory: Callable[..., BillingAutomationEngine]) -> BillingAutomationEngine:
    """Engine on the built-in defaults."""
    return engine_factory()


@pytest.fixture
def drain() -> Callable[[BillingAutomationEngine], list[ChainOutcome]]:
    """Process every request that is ready on an engine's queue, in order."""

    def run(engine: BillingAutomationEngine) -> list[ChainOutcome]:
        outcomes = []
        while True:
            request = engine.queue.get(timeout=0)
            if request is None:
                return outcomes
            outcomes.append(engine.process(request))

    return run


@pytest.fixture
def client(engine: BillingAutomationEngine):
    """TestClient bound to the ``engine`` fixture."""
    from fastapi.testclient import TestClient

    from app import app
    from routes import limiter

    app.state.engine = engine
    limiter.reset()
    with TestClient(app) as test_client:
        yield test_client
    app.state.engine = None
