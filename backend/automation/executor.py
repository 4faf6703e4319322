"""Runs an execution request's action chain on a worker slot.

Actions run strictly in declared order. A delayed action ends the pass
with a deferral so the worker can re-enqueue the request instead of
sleeping; a guard that evaluates false skips the action; a failure
cancels the rest of the chain. Each action runs on an I/O thread and is
awaited with whatever remains of the chain's ``triggerTimeout`` budget.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import CancelledError, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from .actions import ActionContext, ActionDispatcher
from .audit import AuditEvent, AuditLog
from .dead_letter import DeadLetterStore
from .errors import ErrorKind, GuardSyntaxError
from .execution_queue import ExecutionRequest
from .guards import evaluate_guard
from .models import Action, AuditLogLevel, AutomationConfig, BackoffStrategy, RetryPolicy
from .retry import NO_RETRY, RetryOutcome, compute_delay

logger = logging.getLogger(__name__)

TIMEOUT_INITIAL_DELAY = 30
TIMEOUT_MAX_DELAY = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def timeout_policy(max_attempts: int) -> RetryPolicy:
    """Policy for re-dispatching a chain that ran out of time."""
    return RetryPolicy(
        max_attempts=max_attempts,
        backoff_strategy=BackoffStrategy.EXPONENTIAL,
        initial_delay=TIMEOUT_INITIAL_DELAY,
        max_delay=TIMEOUT_MAX_DELAY,
        retry_on=[ErrorKind.TIMEOUT.value],
    )


class ActionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    CANCELLED = "cancelled"
    DEAD_LETTERED = "dead_lettered"
    TIMED_OUT = "timed_out"


_EXECUTED = {
    ActionStatus.SUCCEEDED,
    ActionStatus.FAILED,
    ActionStatus.DEAD_LETTERED,
    ActionStatus.TIMED_OUT,
}


@dataclass
class ActionResult:
    action_id: str | None
    action_type: str
    status: ActionStatus
    attempts: int = 0
    execution_time: int = 0
    result: Any = None
    error: str | None = None
    error_kind: str | None = None
    dead_letter_id: str | None = None

    @property
    def executed(self) -> bool:
        return self.status in _EXECUTED

    @property
    def success(self) -> bool:
        return self.status in (ActionStatus.SUCCEEDED, ActionStatus.SKIPPED, ActionStatus.DEFERRED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "actionId": self.action_id,
            "actionType": self.action_type,
            "status": self.status.value,
            "executed": self.executed,
            "success": self.success,
            "executionTime": self.execution_time,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error,
            "errorKind": self.error_kind,
            "deadLetterId": self.dead_letter_id,
        }


class ChainStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DEFERRED = "deferred"
    RETRY_SCHEDULED = "retry_scheduled"


@dataclass
class ChainOutcome:
    status: ChainStatus
    results: list[ActionResult] = field(default_factory=list)
    resume_index: int | None = None
    not_before: datetime | None = None
    active_seconds: float = 0.0
    error: str | None = None
    timed_out: bool = False

    @property
    def finished(self) -> bool:
        """False while the chain still has a pass scheduled."""
        return self.status in (ChainStatus.COMPLETED, ChainStatus.FAILED)

    @property
    def success(self) -> bool:
        return self.status is ChainStatus.COMPLETED


def _action_document(action: Action) -> dict[str, Any]:
    return action.model_dump(by_alias=True, mode="json", exclude_none=True)


def cancelled_results(actions: tuple[Action, ...], start: int) -> list[ActionResult]:
    return [
        ActionResult(
            action_id=action.id,
            action_type=action.action_type.value,
            status=ActionStatus.CANCELLED,
        )
        for action in actions[start:]
    ]


class ChainExecutor:
    """Executes action chains for the worker pool."""

    def __init__(
        self,
        dispatcher: ActionDispatcher,
        config: Callable[[], AutomationConfig],
        dead_letters: DeadLetterStore | None = None,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] | None = None,
        io_workers: int = 32,
    ) -> None:
        self._dispatcher = dispatcher
        self._config = config
        self._dead_letters = dead_letters
        self._audit = audit
        self._clock = clock or _utcnow
        self._io = ThreadPoolExecutor(max_workers=io_workers, thread_name_prefix="action-io")

    def shutdown(self) -> None:
        self._io.shutdown(wait=False, cancel_futures=True)

    def _record(
        self,
        event: AuditEvent,
        request: ExecutionRequest,
        action: Action,
        level: AuditLogLevel = AuditLogLevel.INFO,
        status: str = "success",
        error_message: str | None = None,
        **details: Any,
    ) -> None:
        if self._audit is None:
            return
        self._audit.record(
            event,
            level=level,
            resource_type=request.origin.value,
            resource_id=request.source_id,
            details={
                "request_id": request.id,
                "subject_id": request.subject_id,
                "action_id": action.id,
                "action_type": action.action_type.value,
                **details,
            },
            status=status,
            error_message=error_message,
        )

    def execute(self, request: ExecutionRequest, dry_run: bool = False) -> ChainOutcome:
        """Run the request's actions from ``resume_index``.

        Args:
            request: The queued request; its context is updated in place
            dry_run: Report what would happen; no delays, retries, audit or
                dead letters

        Returns:
            ChainOutcome; a deferred or retry-scheduled outcome carries the
            resume index and the earliest time for the next pass
        """
        config = self._config().config
        budget = config.performance_settings.trigger_timeout
        ctx = ActionContext(
            origin=request.origin,
            source_id=request.source_id,
            subject_id=request.subject_id,
            variables=request.context,
            dry_run=dry_run,
        )
        results: list[ActionResult] = []
        active = request.active_seconds
        actions = request.actions

        for index in range(request.resume_index, len(actions)):
            action = actions[index]
            action_type = action.action_type.value

            # A pass that resumes at this action has already served its delay.
            resumed_here = index == request.resume_index and request.not_before is not None
            if action.delay_minutes and not resumed_here and not dry_run:
                not_before = self._clock() + timedelta(minutes=action.delay_minutes)
                results.append(
                    ActionResult(action.id, action_type, ActionStatus.DEFERRED)
                )
                logger.info(
                    f"Deferring {action_type} for {request.source_id} until {not_before.isoformat()}"
                )
                self._record(
                    AuditEvent.ACTION_DEFERRED,
                    request,
                    action,
                    not_before=not_before.isoformat(),
                    delay_minutes=action.delay_minutes,
                )
                return ChainOutcome(
                    ChainStatus.DEFERRED,
                    results,
                    resume_index=index,
                    not_before=not_before,
                    active_seconds=active,
                )

            try:
                allowed = evaluate_guard(action.condition, ctx.variables)
            except GuardSyntaxError as e:
                results.append(
                    ActionResult(
                        action.id,
                        action_type,
                        ActionStatus.FAILED,
                        error=str(e),
                        error_kind=ErrorKind.BAD_PARAMETERS.value,
                    )
                )
                results.extend(cancelled_results(actions, index + 1))
                if not dry_run:
                    self._record(
                        AuditEvent.ACTION_FAILED,
                        request,
                        action,
                        level=AuditLogLevel.ERROR,
                        status="error",
                        error_message=str(e),
                    )
                return ChainOutcome(ChainStatus.FAILED, results, active_seconds=active, error=str(e))

            if not allowed:
                results.append(ActionResult(action.id, action_type, ActionStatus.SKIPPED))
                if not dry_run:
                    self._record(
                        AuditEvent.ACTION_SKIPPED, request, action, condition=action.condition
                    )
                continue

            remaining = budget - active
            started = time.monotonic()
            outcome: RetryOutcome | None = None
            if remaining > 0:
                outcome = self._await_action(request, index, action, ctx, remaining, dry_run)
            elapsed = time.monotonic() - started
            active += elapsed

            if outcome is None:
                timed_out = ActionResult(
                    action.id,
                    action_type,
                    ActionStatus.TIMED_OUT,
                    execution_time=round(elapsed * 1000),
                    error=f"Execution exceeded {budget}s",
                    error_kind=ErrorKind.TIMEOUT.value,
                )
                results.append(timed_out)
                results.extend(cancelled_results(actions, index + 1))
                return self._timed_out(request, action, index, timed_out, results, ctx, dry_run)

            if outcome.success:
                results.append(
                    ActionResult(
                        action.id,
                        action_type,
                        ActionStatus.SUCCEEDED,
                        attempts=outcome.attempts,
                        execution_time=round(elapsed * 1000),
                        result=outcome.result,
                    )
                )
                if not dry_run:
                    self._record(
                        AuditEvent.ACTION_EXECUTED, request, action, attempts=outcome.attempts
                    )
                continue

            results.append(self._failed(request, action, outcome, elapsed, ctx, dry_run))
            results.extend(cancelled_results(actions, index + 1))
            return ChainOutcome(
                ChainStatus.FAILED,
                results,
                active_seconds=active,
                error=outcome.error_message,
            )

        return ChainOutcome(ChainStatus.COMPLETED, results, active_seconds=active)

    def _await_action(
        self,
        request: ExecutionRequest,
        index: int,
        action: Action,
        ctx: ActionContext,
        remaining: float,
        dry_run: bool,
    ) -> RetryOutcome | None:
        """Wait up to ``remaining`` seconds for one action; None on timeout.

        A timed-out attempt keeps running on its I/O thread, so it is parked
        on the request. The next pass waits for it instead of starting the
        action again: a finished attempt is adopted as the action's outcome,
        and only an attempt stopped at a cancellation checkpoint (which
        committed nothing) is replaced by a fresh one.
        """
        deadline = time.monotonic() + remaining
        future = request.abandoned if index == request.resume_index else None
        request.abandoned = None

        if future is not None:
            try:
                outcome = future.result(timeout=remaining)
            except FuturesTimeout:
                request.abandoned = future
                return None
            except CancelledError:
                outcome = None
            if outcome is not None and outcome.error_kind is not ErrorKind.CANCELLED:
                logger.info(
                    f"Adopting earlier attempt of {action.action_type.value} "
                    f"for {request.source_id}"
                )
                return outcome
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None

        policy = NO_RETRY if dry_run else None
        future = self._io.submit(self._dispatcher.run, action, ctx, policy)
        try:
            return future.result(timeout=remaining)
        except FuturesTimeout:
            ctx.cancelled.set()
            if not future.cancel():
                request.abandoned = future
            return None

    def _dead_letter(
        self,
        request: ExecutionRequest,
        action: Action,
        ctx: ActionContext,
        error_message: str | None,
        error_kind: str | None,
        attempts: int,
    ) -> str | None:
        queue_settings = self._config().config.performance_settings.queue_settings
        if self._dead_letters is None or not queue_settings.dead_letter_queue:
            return None
        entry = self._dead_letters.add(
            origin=request.origin.value,
            source_id=request.source_id,
            subject_id=request.subject_id,
            action=_action_document(action),
            context=dict(ctx.variables),
            error_message=error_message,
            error_kind=error_kind,
            attempts=attempts,
        )
        self._record(
            AuditEvent.ACTION_DEAD_LETTERED,
            request,
            action,
            level=AuditLogLevel.ERROR,
            status="error",
            error_message=error_message,
            dead_letter_id=entry.id,
            attempts=attempts,
        )
        return entry.id

    def _failed(
        self,
        request: ExecutionRequest,
        action: Action,
        outcome: RetryOutcome,
        elapsed: float,
        ctx: ActionContext,
        dry_run: bool,
    ) -> ActionResult:
        kind = outcome.error_kind.value if outcome.error_kind else None
        result = ActionResult(
            action.id,
            action.action_type.value,
            ActionStatus.FAILED,
            attempts=outcome.attempts,
            execution_time=round(elapsed * 1000),
            error=outcome.error_message,
            error_kind=kind,
        )
        if dry_run:
            return result

        if outcome.exhausted:
            result.dead_letter_id = self._dead_letter(
                request, action, ctx, outcome.error_message, kind, outcome.attempts
            )
            if result.dead_letter_id:
                result.status = ActionStatus.DEAD_LETTERED
                return result

        self._record(
            AuditEvent.ACTION_FAILED,
            request,
            action,
            level=AuditLogLevel.ERROR,
            status="error",
            error_message=outcome.error_message,
            error_kind=kind,
            attempts=outcome.attempts,
            retryable=outcome.exhausted,
        )
        return result

    def _timed_out(
        self,
        request: ExecutionRequest,
        action: Action,
        index: int,
        timed_out: ActionResult,
        results: list[ActionResult],
        ctx: ActionContext,
        dry_run: bool,
    ) -> ChainOutcome:
        config = self._config().config
        budget = config.performance_settings.trigger_timeout
        message = f"{request.origin.value} {request.source_id} exceeded timeout of {budget}s"
        logger.error(message)
        if dry_run:
            return ChainOutcome(ChainStatus.FAILED, results, error=message, timed_out=True)

        policy = timeout_policy(config.max_retry_attempts)
        self._record(
            AuditEvent.EXECUTION_TIMEOUT,
            request,
            action,
            level=AuditLogLevel.ERROR,
            status="error",
            error_message=message,
            dispatch_attempt=request.dispatch_attempt,
        )
        if request.dispatch_attempt < policy.max_attempts:
            delay = compute_delay(policy, request.dispatch_attempt + 1)
            return ChainOutcome(
                ChainStatus.RETRY_SCHEDULED,
                results,
                resume_index=index,
                not_before=self._clock() + timedelta(seconds=delay),
                error=message,
                timed_out=True,
            )

        timed_out.dead_letter_id = self._dead_letter(
            request,
            action,
            ctx,
            message,
            ErrorKind.TIMEOUT.value,
            request.dispatch_attempt,
        )
        return ChainOutcome(ChainStatus.FAILED, results, error=message, timed_out=True)
