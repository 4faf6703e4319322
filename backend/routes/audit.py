"""Audit log routes for compliance review.

Provides endpoints for:
- Listing audit log entries
- Summary statistics
- Exporting audit logs (CSV or JSON)
- The catalog of audited events

Security Note:
    These endpoints should be protected by authentication middleware in production.
    Access to audit logs should be restricted to compliance officers and billing
    administrators.
"""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Query, Request, Response
from pydantic import BaseModel

from automation.audit import AuditEvent, AuditFilters, event_catalog, iter_csv_rows
from config import AUDIT_MAX_EXPORT_ROWS

router = APIRouter(prefix="/api/audit", tags=["audit"])


class AuditLogEntry(BaseModel):
    """Single audit log entry."""

    id: str
    sequence: int
    timestamp: str
    action: str
    level: str = "info"
    user_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict[str, Any] | None = None
    status: str = "success"
    error_message: str | None = None


class AuditLogListResponse(BaseModel):
    """Response for audit log listing."""

    entries: list[AuditLogEntry]
    total: int
    limit: int
    offset: int
    filters_applied: dict[str, Any]


class AuditStats(BaseModel):
    """Summary statistics for audit logs."""

    total_entries: int
    entries_by_action: dict[str, int]
    entries_by_status: dict[str, int]
    entries_by_level: dict[str, int]
    date_range: dict[str, str]


def _audit(request: Request):
    return request.app.state.engine.audit


@router.get("", response_model=AuditLogListResponse)
async def list_audit_logs(
    request: Request,
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    action: str | None = Query(default=None, description="Filter by event name"),
    level: str | None = Query(default=None, description="Filter by level"),
    resource_type: str | None = Query(
        default=None, description="Filter by resource type"
    ),
    resource_id: str | None = Query(default=None, description="Filter by resource ID"),
    status: str | None = Query(default=None, description="Filter by status"),
    start_date: str | None = Query(default=None, description="Start date (ISO format)"),
    end_date: str | None = Query(default=None, description="End date (ISO format)"),
) -> AuditLogListResponse:
    """List audit log entries with filtering and pagination."""
    audit = _audit(request)
    # Reads see everything recorded before the request.
    audit.flush()
    filters = AuditFilters(
        action=action,
        level=level,
        resource_type=resource_type,
        resource_id=resource_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
    )
    entries, total = audit.list_entries(filters, limit=limit, offset=offset)

    return AuditLogListResponse(
        entries=[AuditLogEntry(**entry.to_dict()) for entry in entries],
        total=total,
        limit=limit,
        offset=offset,
        filters_applied=filters.applied(),
    )


@router.get("/stats", response_model=AuditStats)
async def get_audit_stats(
    request: Request,
    start_date: str | None = Query(default=None, description="Start date (ISO format)"),
    end_date: str | None = Query(default=None, description="End date (ISO format)"),
) -> AuditStats:
    """Get summary statistics for audit logs."""
    audit = _audit(request)
    audit.flush()
    return AuditStats(**audit.stats(AuditFilters(start_date=start_date, end_date=end_date)))


@router.get("/export")
async def export_audit_logs(
    request: Request,
    format: str = Query(default="csv", description="Export format: csv or json"),
    start_date: str | None = Query(default=None, description="Start date (ISO format)"),
    end_date: str | None = Query(default=None, description="End date (ISO format)"),
    action: str | None = Query(default=None, description="Filter by event name"),
    limit: int = Query(
        default=AUDIT_MAX_EXPORT_ROWS,
        ge=1,
        le=AUDIT_MAX_EXPORT_ROWS,
        description=f"Maximum rows to export (max {AUDIT_MAX_EXPORT_ROWS})",
    ),
) -> Response:
    """Export audit logs for compliance review.

    Limited to AUDIT_MAX_EXPORT_ROWS rows; use date range filters to batch
    larger exports.
    """
    audit = _audit(request)
    audit.flush()
    filters = AuditFilters(action=action, start_date=start_date, end_date=end_date)
    entries = audit.export_rows(filters, limit=limit)

    # The export itself is audited after the rows are read.
    audit.record(
        AuditEvent.AUDIT_EXPORTED,
        resource_type="audit_logs",
        details={
            "format": format,
            "start_date": start_date,
            "end_date": end_date,
            "action_filter": action,
            "rows": len(entries),
        },
    )

    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    if format == "json":
        content = json.dumps(
            {
                "audit_logs": [entry.to_dict() for entry in entries],
                "exported_at": datetime.now(timezone.utc).isoformat(),
            },
            indent=2,
        )
        return Response(
            content=content,
            media_type="application/json",
            headers={"Content-Disposition": f"attachment; filename=audit_export_{stamp}.json"},
        )

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerows(iter_csv_rows(entries))
    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename=audit_export_{stamp}.csv"},
    )


@router.get("/actions")
async def list_audit_actions() -> dict[str, Any]:
    """List all audited event names."""
    return event_catalog()
