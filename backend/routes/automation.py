"""Billing automation routes.

Configuration management, fact ingestion, trigger testing, the trigger
monitor, compliance checks and the administrative endpoints behind the
billing automation dashboard. Every handler works against the engine on
``app.state.engine``.
"""

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, ValidationError
from slowapi import Limiter
from slowapi.util import get_remote_address

from automation.dead_letter import DeadLetterStatus
from automation.engine import BillingAutomationEngine
from automation.errors import ConfigValidationError
from automation.facts import Fact, FactCategory
from automation.models import Trigger
from automation.store import load_document_text
from automation.thresholds import TaskStatus
from automation.validation import validate_configuration
from utils import sanitize_filename, sanitize_log_value

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing-automation"])

# Rate limiting: config saves and fact ingestion are the write-heavy endpoints
limiter = Limiter(key_func=get_remote_address)


# Request models
class FactRequest(BaseModel):
    subject_id: str = Field(..., min_length=1, alias="subjectId")
    category: FactCategory
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime | None = None
    source: str = "external"

    model_config = {"populate_by_name": True}


class TriggerTestRequest(BaseModel):
    trigger_id: str | None = Field(default=None, alias="triggerId")
    trigger: dict[str, Any] | None = None
    test_data: dict[str, Any] = Field(default_factory=dict, alias="testData")
    dry_run: bool = Field(default=True, alias="dryRun")

    model_config = {"populate_by_name": True}


class MonitorRequest(BaseModel):
    action: Literal["start", "stop", "check", "evaluate"]


class ComplianceCheckRequest(BaseModel):
    metrics: dict[str, Any]
    context: dict[str, Any] = Field(default_factory=dict)


class RuleEvaluationRequest(BaseModel):
    context: dict[str, Any]
    subject_id: str | None = Field(default=None, alias="subjectId")

    model_config = {"populate_by_name": True}


def get_engine(request: Request) -> BillingAutomationEngine:
    return request.app.state.engine


def _invalid(message: str, errors: list[str]) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"success": False, "valid": False, "message": message, "errors": errors},
    )


def _server_error(message: str, e: Exception) -> HTTPException:
    logger.error(f"{message}: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=f"{message}: {str(e)[:200]}")


def _save(engine: BillingAutomationEngine, data: dict[str, Any], user_id: str | None) -> dict[str, Any]:
    try:
        config = engine.save_configuration(data, user_id)
    except ConfigValidationError as e:
        raise _invalid("Configuration validation failed", e.errors)
    except Exception as e:
        raise _server_error("Failed to save automation configuration", e)
    logger.info(f"Automation configuration v{config.version} saved")
    return {
        "success": True,
        "message": "Automation configuration saved successfully",
        "data": engine.get_configuration(),
    }


# --- configuration ---


@router.get("/automation-config")
async def get_automation_config(request: Request):
    """Active configuration document with live counters."""
    engine = get_engine(request)
    return {
        "success": True,
        "data": engine.get_configuration(),
        "history": engine.store.history(),
    }


@router.post("/automation-config")
@limiter.limit("20/minute")
def save_automation_config(
    request: Request,
    document: dict[str, Any],
    x_user_id: str | None = Header(default=None),
):
    """Validate, persist and activate a configuration document.

    Either the whole document is accepted or nothing changes; a rejected
    document returns every validation error at once.
    """
    return _save(get_engine(request), document, x_user_id)


@router.post("/automation-config/validate")
async def validate_automation_config(document: dict[str, Any]):
    """Validate a document without saving it."""
    result = validate_configuration(document)
    return {"success": True, "valid": result.valid, "errors": result.errors}


@router.post("/automation-config/import")
async def import_automation_config(
    request: Request,
    file: UploadFile = File(...),
    dry_run: bool = Query(default=True, description="Validate only, don't activate"),
    x_user_id: str | None = Header(default=None),
):
    """Import a configuration document from a YAML or JSON file.

    Use dry_run=true to validate the document without activating it.
    """
    content = (await file.read()).decode("utf-8", errors="replace")

    # Sanitize filename for safe extension detection
    filename = sanitize_filename(file.filename)
    # YAML is a superset of JSON, so unknown extensions parse as YAML
    fmt = "json" if filename.endswith(".json") else "yaml"
    try:
        data = load_document_text(content, fmt)
    except ConfigValidationError as e:
        raise _invalid(str(e), e.errors)

    if dry_run:
        result = validate_configuration(data)
        if not result.valid:
            raise _invalid("Configuration validation failed", result.errors)
        return {
            "success": True,
            "status": "validated",
            "message": f"Successfully validated {filename}",
            "triggers": len(result.config.triggers),
            "thresholds": len(result.config.thresholds),
        }

    engine = get_engine(request)
    return await run_in_threadpool(_save, engine, data, x_user_id)


# --- facts and triggers ---


@router.post("/facts")
@limiter.limit("120/minute")
def ingest_fact(request: Request, fact_request: FactRequest):
    """Route a fact to every trigger listening for its category."""
    engine = get_engine(request)
    fact_kwargs: dict[str, Any] = {
        "subject_id": fact_request.subject_id,
        "category": fact_request.category,
        "data": fact_request.data,
        "source": fact_request.source,
    }
    if fact_request.timestamp is not None:
        fact_kwargs["timestamp"] = fact_request.timestamp
    fact = Fact(**fact_kwargs)

    try:
        matches = engine.ingest_fact(fact)
    except Exception as e:
        raise _server_error(
            f"Failed to process fact for {sanitize_log_value(fact.subject_id)}", e
        )
    return {
        "success": True,
        "subjectId": fact.subject_id,
        "category": fact.category.value,
        "matches": [match.to_dict() for match in matches],
        "fired": sum(1 for match in matches if match.accepted),
    }


@router.post("/test-trigger")
def test_trigger(request: Request, test_request: TriggerTestRequest):
    """Evaluate a trigger against sample data.

    Dry run by default: handlers report what they would do and nothing is
    delivered or counted.
    """
    engine = get_engine(request)
    if test_request.trigger is not None:
        try:
            trigger = Trigger.model_validate(test_request.trigger)
        except ValidationError as e:
            raise _invalid(
                "Invalid trigger definition",
                [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
            )
    elif test_request.trigger_id:
        trigger = engine.config.trigger(test_request.trigger_id)
        if trigger is None:
            raise HTTPException(
                status_code=404, detail=f"Trigger not found: {test_request.trigger_id}"
            )
    else:
        raise HTTPException(status_code=400, detail="triggerId or trigger is required")

    try:
        result = engine.test_trigger(trigger, test_request.test_data, test_request.dry_run)
    except Exception as e:
        raise _server_error("Failed to test trigger", e)

    logger.info(
        f"Trigger test {sanitize_log_value(trigger.id)}: "
        f"{len(result['conditionsEvaluated'])} conditions, "
        f"{len(result['actionsExecuted'])} actions, {len(result['errors'])} errors"
    )
    return {
        "success": True,
        "message": f"Trigger test completed for {trigger.id}",
        "result": result,
    }


@router.get("/trigger-monitor")
async def get_trigger_monitor(request: Request):
    status = get_engine(request).status()
    return {
        "success": True,
        "status": status,
        "uptime": "Running" if status["running"] else "Stopped",
    }


@router.post("/trigger-monitor")
def control_trigger_monitor(request: Request, monitor_request: MonitorRequest):
    """Start or stop the scheduler and workers, or run a scan now."""
    engine = get_engine(request)
    action = monitor_request.action
    if action == "start":
        engine.start()
        message = "Trigger monitoring started"
    elif action == "stop":
        engine.stop()
        message = "Trigger monitoring stopped"
    elif action == "check":
        engine.scheduler.tick()
        message = "Manual trigger check completed"
    else:
        engine.monitor.tick()
        message = "Manual threshold evaluation completed"
    return {"success": True, "message": message, "status": engine.status()}


@router.post("/triggers/{trigger_id}/reset-stats")
async def reset_trigger_stats(
    request: Request, trigger_id: str, x_user_id: str | None = Header(default=None)
):
    try:
        get_engine(request).reset_trigger_stats(trigger_id, x_user_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Trigger not found: {trigger_id}")
    return {"success": True, "triggerId": trigger_id}


# --- thresholds ---


@router.post("/compliance-check")
def compliance_check(request: Request, check_request: ComplianceCheckRequest):
    """Check supplied metrics against every enabled threshold."""
    engine = get_engine(request)
    try:
        results = engine.compliance_check(check_request.metrics, check_request.context)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise _server_error("Compliance check failed", e)
    return {
        "success": True,
        "results": [result.to_dict() for result in results],
        "violations": sum(1 for result in results if result.violated),
    }


@router.get("/violations")
async def list_violations(request: Request):
    return {"success": True, "violations": get_engine(request).monitor.violations()}


@router.post("/violations/{threshold_id}/resolve")
async def resolve_violation(
    request: Request, threshold_id: str, x_user_id: str | None = Header(default=None)
):
    try:
        snapshot = get_engine(request).monitor.resolve_violation(threshold_id, x_user_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Threshold not found: {threshold_id}")
    return {"success": True, "violation": snapshot}


@router.post("/thresholds/{threshold_id}/reset-violations")
async def reset_threshold_violations(
    request: Request, threshold_id: str, x_user_id: str | None = Header(default=None)
):
    try:
        get_engine(request).reset_threshold_violations(threshold_id, x_user_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Threshold not found: {threshold_id}")
    return {"success": True, "thresholdId": threshold_id}


@router.get("/tasks")
async def list_tasks(
    request: Request,
    status: TaskStatus | None = Query(default=None),
    role: str | None = Query(default=None, description="Filter by assigned role"),
):
    tasks = get_engine(request).monitor.tasks.list(status=status, role=role)
    return {"success": True, "tasks": [task.to_dict() for task in tasks], "total": len(tasks)}


@router.post("/tasks/{task_id}/approve")
def approve_task(
    request: Request, task_id: str, x_user_id: str | None = Header(default=None)
):
    """Approve a pending remediation task and dispatch its action."""
    monitor = get_engine(request).monitor
    if monitor.tasks.get(task_id) is None:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    task = monitor.approve_task(task_id, x_user_id)
    if task is None:
        raise HTTPException(status_code=409, detail=f"Task {task_id} is not pending")
    return {"success": True, "task": task.to_dict()}


# --- dead letters ---


@router.get("/dead-letters")
async def list_dead_letters(
    request: Request,
    status: DeadLetterStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
):
    store = get_engine(request).dead_letters
    entries = store.list_entries(status, limit=limit, offset=offset)
    return {
        "success": True,
        "entries": [entry.to_dict() for entry in entries],
        "total": store.count(status),
        "limit": limit,
        "offset": offset,
    }


@router.post("/dead-letters/{entry_id}/replay")
def replay_dead_letter(
    request: Request, entry_id: str, x_user_id: str | None = Header(default=None)
):
    try:
        result = get_engine(request).replay_dead_letter(entry_id, x_user_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if result is None:
        raise HTTPException(status_code=404, detail=f"Dead letter not found: {entry_id}")
    return {"success": True, **result}


@router.post("/dead-letters/{entry_id}/discard")
async def discard_dead_letter(
    request: Request, entry_id: str, x_user_id: str | None = Header(default=None)
):
    try:
        entry = get_engine(request).discard_dead_letter(entry_id, x_user_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Dead letter not found: {entry_id}")
    return {"success": True, "entry": entry}


# --- business rules and notifications ---


@router.post("/business-rules/evaluate")
async def evaluate_business_rules(request: Request, rule_request: RuleEvaluationRequest):
    evaluation = get_engine(request).evaluate_business_rules(
        rule_request.context, rule_request.subject_id
    )
    return {"success": True, **evaluation.to_dict()}


@router.post("/business-rules/{rule_id}/reset-stats")
async def reset_rule_stats(
    request: Request, rule_id: str, x_user_id: str | None = Header(default=None)
):
    try:
        get_engine(request).reset_rule_stats(rule_id, x_user_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Business rule not found: {rule_id}")
    return {"success": True, "ruleId": rule_id}


@router.get("/notifications/outbox")
async def notification_outbox(
    request: Request, limit: int = Query(default=100, ge=1, le=500)
):
    """Most recent notifications handed to the in-memory transport."""
    notifications = get_engine(request).notifications
    messages = notifications.outbox.messages()[-limit:]
    return {
        "success": True,
        "messages": [message.to_dict() for message in reversed(messages)],
        "deferred": notifications.deferred(),
    }
