"""Shared configuration for the billing automation backend.

This module centralizes environment variable access and default values
to prevent drift between modules. The automation configuration document
itself lives in the database and is managed through the API.
"""

import os

# Database configuration
DB_PATH = os.getenv("DB_PATH", "./data/automation.db")

# Optional YAML/JSON document loaded when no configuration version is saved
AUTOMATION_CONFIG_PATH = os.getenv("AUTOMATION_CONFIG_PATH") or None

# Start the scheduler and worker pool with the application
AUTOMATION_AUTOSTART = os.getenv("AUTOMATION_AUTOSTART", "true").lower() == "true"

# Seconds between scheduler scans of time-based triggers
SCHEDULER_TICK_SECONDS = float(os.getenv("SCHEDULER_TICK_SECONDS", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Maximum rows for audit export to prevent memory issues
AUDIT_MAX_EXPORT_ROWS = int(os.getenv("AUDIT_MAX_EXPORT_ROWS", "10000"))
