"""Background scheduling and execution for the automation engine.

Uses APScheduler to scan time-based triggers and run periodic
housekeeping, and a thread pool to drain the execution queue.
"""

from .business_hours import BusinessCalendar
from .scheduler import TriggerScheduler
from .worker import WorkerPool

__all__ = [
    "BusinessCalendar",
    "TriggerScheduler",
    "WorkerPool",
]
