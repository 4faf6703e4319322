"""External collaborators invoked by action handlers.

Each service is a small in-memory implementation that records what it was
asked to do. Deployments replace them with clients for the real claim,
compliance, tasking and reporting systems; the dispatcher only relies on
the method signatures below.
"""

from __future__ import annotations

import itertools
import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .errors import PermanentExecutionError

logger = logging.getLogger(__name__)

DEFAULT_CLEARING_HOUSE = "Change Healthcare"

_RELATIVE_DUE = re.compile(r"^\+(\d+)\s*(minute|hour|day|week)s?$", re.IGNORECASE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_due_date(value: Any, now: datetime) -> str | None:
    """Turn ``"+3 days"`` style offsets into an ISO timestamp."""
    if value is None or value == "":
        return None
    match = _RELATIVE_DUE.match(str(value).strip())
    if not match:
        return str(value)
    amount, unit = int(match.group(1)), match.group(2).lower()
    delta = {
        "minute": timedelta(minutes=amount),
        "hour": timedelta(hours=amount),
        "day": timedelta(days=amount),
        "week": timedelta(weeks=amount),
    }[unit]
    return (now + delta).isoformat()


class ClaimService:
    """UB-04 generation and clearing-house submission."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self.documents: list[dict[str, Any]] = []
        self.submissions: list[dict[str, Any]] = []

    def generate_ub04(
        self, subject_id: str, context: dict[str, Any], parameters: dict[str, Any]
    ) -> dict[str, Any]:
        patient_id = context.get("patient_id", subject_id)
        if parameters.get("validateBeforeGeneration") and context.get("total_charges") is not None:
            try:
                if float(context["total_charges"]) < 0:
                    raise PermanentExecutionError("Total charges cannot be negative")
            except (TypeError, ValueError) as e:
                raise PermanentExecutionError(f"Invalid total charges: {e}") from e
        document = {
            "documentId": f"UB04_{uuid.uuid4().hex[:12]}",
            "formNumber": f"UB04-{patient_id}",
            "totalCharges": context.get("total_charges"),
            "generatedAt": self._clock().isoformat(),
            "status": "generated",
        }
        with self._lock:
            self.documents.append(document)
        logger.info(f"Generated UB-04 {document['documentId']} for {subject_id}")
        return document

    def submit_claim(
        self, subject_id: str, context: dict[str, Any], parameters: dict[str, Any]
    ) -> dict[str, Any]:
        patient_id = context.get("patient_id", subject_id)
        submission = {
            "submissionId": f"SUB_{uuid.uuid4().hex[:12]}",
            "claimNumber": f"CLM_{patient_id}",
            "clearingHouse": parameters.get("clearingHouse", DEFAULT_CLEARING_HOUSE),
            "submittedAt": self._clock().isoformat(),
            "status": "submitted",
        }
        with self._lock:
            self.submissions.append(submission)
        logger.info(f"Submitted claim {submission['claimNumber']} for {subject_id}")
        return submission


class ComplianceService:
    """Scores an episode's documentation.

    The default implementation reports the score already present in the
    context, falling back to ``default_score``, and lists any required
    documents the context says are missing.
    """

    def __init__(self, default_score: float = 92.0) -> None:
        self.default_score = default_score
        self.checks: list[dict[str, Any]] = []

    def run_check(
        self, subject_id: str, context: dict[str, Any], parameters: dict[str, Any]
    ) -> dict[str, Any]:
        score = context.get("compliance_score", self.default_score)
        try:
            score = float(score)
        except (TypeError, ValueError) as e:
            raise PermanentExecutionError(f"Invalid compliance score: {score!r}") from e

        required = set(context.get("required_documents") or [])
        submitted = set(context.get("submitted_documents") or [])
        missing = sorted(required - submitted)
        recommendations = []
        if parameters.get("includeRecommendations", True):
            recommendations = [f"Submit {doc}" for doc in missing]
            if score < 90:
                recommendations.append("Review documentation for completeness")

        result = {
            "complianceScore": score,
            "missingDocuments": missing,
            "recommendations": recommendations,
            "checkType": parameters.get("checkType", "full"),
        }
        self.checks.append({"subjectId": subject_id, **result})
        return result


@dataclass
class Task:
    id: str
    title: str
    description: str | None
    assignee: str | None
    priority: str
    due_date: str | None
    status: str
    created_at: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.id,
            "title": self.title,
            "description": self.description,
            "assignee": self.assignee,
            "priority": self.priority,
            "dueDate": self.due_date,
            "status": self.status,
            "createdAt": self.created_at,
            "metadata": self.metadata,
        }


class TaskService:
    """Work items for staff."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._tasks: dict[str, Task] = {}

    def create(
        self,
        title: str,
        description: str | None = None,
        assignee: str | None = None,
        priority: str = "medium",
        due_date: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        now = self._clock()
        with self._lock:
            task = Task(
                id=f"TASK_{next(self._ids):05d}",
                title=title,
                description=description,
                assignee=assignee,
                priority=priority,
                due_date=resolve_due_date(due_date, now),
                status="created",
                created_at=now.isoformat(),
                metadata=metadata or {},
            )
            self._tasks[task.id] = task
        logger.info(f"Created task {task.id}: {title} ({assignee or 'unassigned'})")
        return task

    def list(self) -> list[Task]:
        with self._lock:
            return list(self._tasks.values())


class StatusService:
    """Record status changes (episode, claim, authorization)."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._statuses: dict[str, str] = {}

    def update(self, record_id: str, status: str, previous: str | None = None) -> dict[str, Any]:
        with self._lock:
            old = self._statuses.get(record_id, previous)
            self._statuses[record_id] = status
        return {
            "recordId": record_id,
            "oldStatus": old,
            "newStatus": status,
            "updatedAt": self._clock().isoformat(),
            "status": "updated",
        }

    def get(self, record_id: str) -> str | None:
        with self._lock:
            return self._statuses.get(record_id)


class ReportService:
    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow
        self.reports: list[dict[str, Any]] = []

    def generate(
        self, report_type: str, subject_id: str, context: dict[str, Any]
    ) -> dict[str, Any]:
        report = {
            "reportId": f"RPT_{uuid.uuid4().hex[:12]}",
            "reportType": report_type,
            "subjectId": subject_id,
            "generatedAt": self._clock().isoformat(),
            "status": "generated",
        }
        self.reports.append(report)
        return report


@dataclass
class Services:
    """Bundle of collaborators handed to the dispatcher."""

    claims: ClaimService = field(default_factory=ClaimService)
    compliance: ComplianceService = field(default_factory=ComplianceService)
    tasks: TaskService = field(default_factory=TaskService)
    statuses: StatusService = field(default_factory=StatusService)
    reports: ReportService = field(default_factory=ReportService)

    @classmethod
    def in_memory(cls, clock: Callable[[], datetime] | None = None) -> Services:
        return cls(
            claims=ClaimService(clock),
            compliance=ComplianceService(),
            tasks=TaskService(clock),
            statuses=StatusService(clock),
            reports=ReportService(clock),
        )
