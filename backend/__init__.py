"""Billing Automation Backend Package.

This package provides the FastAPI backend for compliance-driven billing
automation, including:

- Trigger evaluation over episode facts and cron schedules
- Compliance thresholds with escalation and remediation
- Notification delivery with rate limits and cooldowns
- Business rules that gate billing actions
- Versioned configuration and an append-only audit log

Usage:
    # Development (from project root):
    PYTHONPATH=backend uvicorn app:app --reload --port 8080

Modules:
    app: FastAPI application entry point
    automation: Trigger, threshold, action and notification engine
    scheduler: APScheduler ticks and the execution worker pool
    routes: HTTP routers for automation and audit
    utils: Date parsing and input sanitization
"""

__version__ = "0.1.0"
