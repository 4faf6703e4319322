"""API route modules for the billing automation service.

Routers:
- automation: configuration, fact ingestion, trigger testing and monitoring
- audit: audit log listing, statistics and export
"""

from .audit import router as audit_router
from .automation import limiter
from .automation import router as automation_router

__all__ = ["automation_router", "audit_router", "limiter"]
