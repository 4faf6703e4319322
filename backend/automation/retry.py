"""Per-action retry with fixed, linear or exponential backoff."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import ErrorKind, PermanentExecutionError, classify_exception
from .models import BackoffStrategy, RetryPolicy

logger = logging.getLogger(__name__)

# Policy applied when an action declares none: a single attempt.
NO_RETRY = RetryPolicy(max_attempts=1, retry_on=[])


def compute_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay in seconds before ``attempt`` (1-based); attempt 1 never waits.

    fixed:       initialDelay
    linear:      initialDelay * (n - 1)
    exponential: initialDelay * 2 ** (n - 2)

    All capped at ``maxDelay``.
    """
    if attempt < 2:
        return 0.0
    if policy.backoff_strategy is BackoffStrategy.FIXED:
        delay = policy.initial_delay
    elif policy.backoff_strategy is BackoffStrategy.LINEAR:
        delay = policy.initial_delay * (attempt - 1)
    else:
        delay = policy.initial_delay * (2 ** (attempt - 2))
    return float(min(delay, policy.max_delay))


def delay_schedule(policy: RetryPolicy) -> list[float]:
    """Delays before attempts 2..maxAttempts."""
    return [compute_delay(policy, n) for n in range(2, policy.max_attempts + 1)]


def is_retryable(exc: BaseException, policy: RetryPolicy) -> bool:
    if isinstance(exc, PermanentExecutionError):
        return False
    return classify_exception(exc).value in set(policy.retry_on)


@dataclass
class RetryOutcome:
    """Result of running a callable under a retry policy."""

    success: bool
    result: Any = None
    attempts: int = 0
    delays: list[float] = field(default_factory=list)
    error: BaseException | None = None
    error_kind: ErrorKind | None = None
    exhausted: bool = False

    @property
    def error_message(self) -> str | None:
        return str(self.error) if self.error is not None else None


class RetryExecutor:
    """Runs a callable up to ``maxAttempts`` times.

    Only errors whose kind is listed in ``retryOn`` are retried; any other
    error fails immediately without consuming the remaining attempts.
    ``exhausted`` on the outcome tells the caller the failure should be
    dead-lettered rather than reported as a hard failure.
    """

    def __init__(self, sleep: Callable[[float], None] | None = None) -> None:
        self._sleep = sleep or time.sleep

    def run(
        self,
        func: Callable[[], Any],
        policy: RetryPolicy | None = None,
        label: str = "action",
    ) -> RetryOutcome:
        """Execute ``func`` under ``policy``.

        Args:
            func: Zero-argument callable performing one attempt
            policy: Retry policy; defaults to a single attempt
            label: Name used in log messages

        Returns:
            RetryOutcome describing the final attempt
        """
        policy = policy or NO_RETRY
        outcome = RetryOutcome(success=False)

        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                delay = compute_delay(policy, attempt)
                outcome.delays.append(delay)
                logger.warning(
                    f"Retrying {label} (attempt {attempt}/{policy.max_attempts}) "
                    f"in {delay}s after {outcome.error_kind.value if outcome.error_kind else 'error'}"
                )
                if delay > 0:
                    self._sleep(delay)

            outcome.attempts = attempt
            try:
                outcome.result = func()
                outcome.success = True
                outcome.error = None
                outcome.error_kind = None
                return outcome
            except Exception as e:
                outcome.error = e
                outcome.error_kind = classify_exception(e)
                if not is_retryable(e, policy):
                    logger.error(f"{label} failed with non-retryable error: {e}")
                    return outcome

        outcome.exhausted = True
        logger.error(f"{label} exhausted {policy.max_attempts} attempts: {outcome.error}")
        return outcome
