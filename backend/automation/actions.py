"""Action dispatcher: one handler per action type, shared by trigger
chains and threshold remediation.

Handlers receive the action and a mutable :class:`ActionContext`; they
return a result dict and raise :class:`ExecutionError` subclasses on
failure. With ``dry_run`` set, handlers report ``would_be_*`` statuses and
leave collaborators untouched.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from .audit import AuditEvent, AuditLog
from .business_rules import BusinessRuleEngine
from .errors import ErrorKind, PermanentExecutionError
from .execution_queue import RequestOrigin
from .models import Action, ActionType, AutoBillingConfig, AuditLogLevel, NotificationChannel, RetryPolicy
from .notifications import NotificationDispatcher, raise_for_failures, request_json
from .retry import RetryExecutor, RetryOutcome
from .services import Services, resolve_due_date

logger = logging.getLogger(__name__)

ActionHandler = Callable[[Action, "ActionContext"], dict[str, Any]]

WEBHOOK_TIMEOUT = 10.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActionContext:
    """Execution context shared by the actions of one chain.

    ``variables`` starts as the fact fields plus trigger metadata; handlers
    write their outputs back so later guards can read them.
    """

    origin: RequestOrigin
    source_id: str
    subject_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False
    cancelled: threading.Event = field(default_factory=threading.Event)

    def ensure_active(self) -> None:
        """Called before a side effect commits; raises once the pass has timed out."""
        if self.cancelled.is_set():
            raise PermanentExecutionError(
                f"Execution for {self.source_id} was cancelled", ErrorKind.CANCELLED
            )

    def attribution(self) -> dict[str, Any]:
        return {
            "origin": self.origin.value,
            "source_id": self.source_id,
            "subject_id": self.subject_id,
        }


class ActionDispatcher:
    """Routes actions to handlers and runs them under a retry policy."""

    def __init__(
        self,
        config: Callable[[], AutoBillingConfig],
        services: Services | None = None,
        notifications: NotificationDispatcher | None = None,
        business_rules: BusinessRuleEngine | None = None,
        http_client: httpx.Client | None = None,
        retry: RetryExecutor | None = None,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self.services = services or Services.in_memory(clock)
        self._notifications = notifications
        self._business_rules = business_rules
        self._http = http_client
        self._retry = retry or RetryExecutor()
        self._audit = audit
        self._clock = clock or _utcnow
        self._handlers: dict[ActionType, ActionHandler] = {}

        self.register(ActionType.GENERATE_UB04, self._generate_ub04)
        self.register(ActionType.RUN_COMPLIANCE_CHECK, self._run_compliance_check)
        self.register(ActionType.SUBMIT_CLAIM, self._submit_claim)
        self.register(ActionType.SEND_NOTIFICATION, self._send_notification)
        self.register(ActionType.CREATE_TASK, self._create_task)
        self.register(ActionType.UPDATE_STATUS, self._update_status)
        self.register(ActionType.CALL_WEBHOOK, self._call_http)
        self.register(ActionType.CALL_API, self._call_http)
        self.register(ActionType.GENERATE_REPORT, self._generate_report)

    def register(self, action_type: ActionType, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    def supports(self, action_type: ActionType) -> bool:
        return action_type in self._handlers

    @property
    def http(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=httpx.Timeout(WEBHOOK_TIMEOUT))
        return self._http

    def close(self) -> None:
        if self._http is not None:
            self._http.close()

    def default_policy(self) -> RetryPolicy:
        """Policy for actions that declare none."""
        return RetryPolicy(max_attempts=self._config().max_retry_attempts)

    def execute(self, action: Action, ctx: ActionContext) -> dict[str, Any]:
        """Run one attempt of ``action``."""
        handler = self._handlers.get(action.action_type)
        if handler is None:
            raise PermanentExecutionError(
                f"Unsupported action type: {action.action_type.value}",
                ErrorKind.UNSUPPORTED_ACTION,
            )
        ctx.ensure_active()
        return handler(action, ctx)

    def run(
        self, action: Action, ctx: ActionContext, policy: RetryPolicy | None = None
    ) -> RetryOutcome:
        """Run ``action`` under its retry policy (or the default one)."""
        policy = policy or action.retry_policy or self.default_policy()
        label = f"{action.action_type.value} ({action.id or 'unnamed'}) for {ctx.source_id}"
        return self._retry.run(lambda: self.execute(action, ctx), policy, label=label)

    # --- billing ---

    def _check_billing_rules(self, action: Action, ctx: ActionContext) -> None:
        config = self._config()
        if not config.enabled:
            raise PermanentExecutionError(
                "Auto-billing is disabled", ErrorKind.BUSINESS_RULE_HOLD
            )
        if self._business_rules is None:
            return
        evaluation = self._business_rules.evaluate(ctx.variables, subject_id=ctx.subject_id)
        if evaluation.holds_billing:
            reason = evaluation.hold_reason or "Billing held by business rule"
            if self._audit is not None:
                self._audit.record(
                    AuditEvent.BILLING_HELD,
                    level=AuditLogLevel.WARN,
                    resource_type="billing",
                    resource_id=ctx.subject_id,
                    details={**ctx.attribution(), "action_type": action.action_type.value},
                    status="held",
                    error_message=reason,
                )
            raise PermanentExecutionError(reason, ErrorKind.BUSINESS_RULE_HOLD)

    def _generate_ub04(self, action: Action, ctx: ActionContext) -> dict[str, Any]:
        if ctx.dry_run:
            return {
                "documentId": f"TEST_UB04_{uuid.uuid4().hex[:12]}",
                "formNumber": f"TEST-UB04-{ctx.variables.get('patient_id', ctx.subject_id)}",
                "totalCharges": ctx.variables.get("total_charges"),
                "status": "would_be_generated",
            }
        self._check_billing_rules(action, ctx)
        ctx.ensure_active()
        document = self.services.claims.generate_ub04(
            ctx.subject_id, ctx.variables, action.parameters
        )
        ctx.variables["ub04_document_id"] = document["documentId"]
        if action.parameters.get("autoSubmit") and self._config().auto_submit_to_clearing_house:
            document["submission"] = self._submit(action, ctx)
        return document

    def _submit(self, action: Action, ctx: ActionContext) -> dict[str, Any]:
        config = self._config()
        score = ctx.variables.get("compliance_score")
        if score is not None:
            try:
                below = float(score) < config.minimum_compliance_score
            except (TypeError, ValueError):
                below = True
            if below:
                raise PermanentExecutionError(
                    f"Compliance score {score} is below the minimum of "
                    f"{config.minimum_compliance_score}",
                    ErrorKind.BUSINESS_RULE_HOLD,
                )
        ctx.ensure_active()
        submission = self.services.claims.submit_claim(
            ctx.subject_id, ctx.variables, action.parameters
        )
        ctx.variables["claim_number"] = submission["claimNumber"]
        if self._audit is not None:
            self._audit.record(
                AuditEvent.BILLING_SUBMITTED,
                resource_type="claim",
                resource_id=submission["claimNumber"],
                details={**ctx.attribution(), "submission_id": submission["submissionId"]},
            )
        return submission

    def _submit_claim(self, action: Action, ctx: ActionContext) -> dict[str, Any]:
        if ctx.dry_run:
            return {
                "submissionId": f"SUB_{uuid.uuid4().hex[:12]}",
                "claimNumber": f"CLM_{ctx.variables.get('patient_id', ctx.subject_id)}",
                "clearingHouse": action.parameters.get("clearingHouse", "Change Healthcare"),
                "status": "would_be_submitted",
            }
        self._check_billing_rules(action, ctx)
        return self._submit(action, ctx)

    def _run_compliance_check(self, action: Action, ctx: ActionContext) -> dict[str, Any]:
        result = self.services.compliance.run_check(
            ctx.subject_id, ctx.variables, action.parameters
        )
        ctx.variables["compliance_score"] = result["complianceScore"]
        ctx.variables["missing_documents"] = result["missingDocuments"]
        return result

    # --- staff-facing ---

    def _send_notification(self, action: Action, ctx: ActionContext) -> dict[str, Any]:
        params = action.parameters
        notification_type = params.get("type") or "general"
        recipients = params.get("recipients") or []
        if isinstance(recipients, str):
            recipients = [recipients]
        if ctx.dry_run:
            return {
                "notificationId": f"NOTIF_{uuid.uuid4().hex[:12]}",
                "type": notification_type,
                "recipients": recipients,
                "sentAt": self._clock().isoformat(),
                "status": "would_be_sent",
            }
        if self._notifications is None:
            raise PermanentExecutionError("No notification dispatcher configured")

        variables = {
            **ctx.variables,
            "subject_id": ctx.subject_id,
            "source_id": ctx.source_id,
            "urgency": params.get("urgency", "medium"),
            "notification_type": notification_type,
        }
        ctx.ensure_active()
        results = self._notifications.notify(
            recipients,
            notification_type,
            variables,
            channel=NotificationChannel(params["channel"]) if params.get("channel") else None,
            template_id=params.get("template"),
            subject=params.get("subject"),
            body=params.get("message"),
            role=params.get("notifyRole"),
        )
        raise_for_failures(results)
        return {
            "notificationId": results[0].notification_id if results else None,
            "type": notification_type,
            "recipients": [r.recipient for r in results],
            "sentAt": self._clock().isoformat(),
            "status": "sent",
            "deliveries": [r.to_dict() for r in results],
        }

    def _create_task(self, action: Action, ctx: ActionContext) -> dict[str, Any]:
        params = action.parameters
        title = params.get("title") or f"Follow up on {ctx.subject_id}"
        assignee = params.get("assignee") or params.get("assignedRole")
        priority = params.get("priority", "medium")
        if ctx.dry_run:
            return {
                "taskId": f"TASK_{uuid.uuid4().hex[:8]}",
                "title": title,
                "assignee": assignee,
                "priority": priority,
                "dueDate": resolve_due_date(params.get("dueDate"), self._clock()),
                "createdAt": self._clock().isoformat(),
                "status": "would_be_created",
            }
        ctx.ensure_active()
        task = self.services.tasks.create(
            title=title,
            description=params.get("description"),
            assignee=assignee,
            priority=priority,
            due_date=params.get("dueDate"),
            metadata=ctx.attribution(),
        )
        return task.to_dict()

    def _update_status(self, action: Action, ctx: ActionContext) -> dict[str, Any]:
        params = action.parameters
        new_status = params.get("status")
        if not new_status:
            raise PermanentExecutionError("update_status requires a 'status' parameter")
        record_id = params.get("recordId") or ctx.variables.get("episode_id") or ctx.subject_id
        previous = ctx.variables.get("episode_status")
        if ctx.dry_run:
            return {
                "recordId": record_id,
                "oldStatus": previous,
                "newStatus": new_status,
                "updatedAt": self._clock().isoformat(),
                "status": "would_be_updated",
            }
        ctx.ensure_active()
        return self.services.statuses.update(record_id, new_status, previous)

    def _generate_report(self, action: Action, ctx: ActionContext) -> dict[str, Any]:
        report_type = action.parameters.get("reportType", "compliance_summary")
        if ctx.dry_run:
            return {
                "reportType": report_type,
                "subjectId": ctx.subject_id,
                "status": "would_be_generated",
            }
        ctx.ensure_active()
        return self.services.reports.generate(report_type, ctx.subject_id, ctx.variables)

    # --- outbound HTTP ---

    def _call_http(self, action: Action, ctx: ActionContext) -> dict[str, Any]:
        params = action.parameters
        url = params.get("url") or params.get("endpoint")
        if not url:
            raise PermanentExecutionError(
                f"{action.action_type.value} requires a 'url' parameter"
            )
        method = str(params.get("method", "POST")).upper()
        if ctx.dry_run:
            return {"webhookUrl": url, "method": method, "status": "would_be_called"}

        payload = params.get("payload") or {
            "actionType": action.action_type.value,
            "origin": ctx.origin.value,
            "sourceId": ctx.source_id,
            "subjectId": ctx.subject_id,
            "sentAt": self._clock().isoformat(),
        }
        ctx.ensure_active()
        started = time.monotonic()
        response = request_json(self.http, method, url, payload, params.get("headers"))
        return {
            "webhookUrl": url,
            "method": method,
            "responseStatus": response.status_code,
            "responseTime": round((time.monotonic() - started) * 1000),
            "status": "called",
        }
