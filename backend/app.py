"""FastAPI backend for compliance-driven billing automation."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from automation.engine import BillingAutomationEngine
from config import (
    AUTOMATION_AUTOSTART,
    AUTOMATION_CONFIG_PATH,
    DB_PATH,
    LOG_LEVEL,
    SCHEDULER_TICK_SECONDS,
)
from routes import audit_router, automation_router, limiter

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def create_engine() -> BillingAutomationEngine:
    """Build the engine from process settings."""
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    return BillingAutomationEngine(
        DB_PATH,
        seed_path=AUTOMATION_CONFIG_PATH,
        tick_seconds=SCHEDULER_TICK_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the automation engine on startup and close it on shutdown."""
    # Tests may install their own engine before startup
    engine = getattr(app.state, "engine", None) or create_engine()
    app.state.engine = engine

    if AUTOMATION_AUTOSTART:
        engine.start()
    else:
        logger.info("Automation autostart disabled; use POST /api/billing/trigger-monitor")

    yield

    try:
        engine.close()
        logger.info("Automation engine shutdown complete")
    except Exception as e:
        logger.warning(f"Automation engine shutdown error: {e}")


app = FastAPI(
    title="Billing Automation Service",
    description="Compliance-driven triggers, thresholds and billing actions",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting configuration
# Configuration saves: 20 requests/minute; fact ingestion: 120 requests/minute
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS configuration
CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register API routers
app.include_router(automation_router)
app.include_router(audit_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    engine = app.state.engine
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "engine_running": engine.running,
        "config_version": engine.config.version,
    }
