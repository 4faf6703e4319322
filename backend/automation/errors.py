"""Error taxonomy for the billing automation engine."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Error kinds that retry policies can name in ``retryOn``."""

    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    BAD_PARAMETERS = "bad_parameters"
    UNSUPPORTED_ACTION = "unsupported_action"
    TEMPLATE_ERROR = "template_error"
    BUSINESS_RULE_HOLD = "business_rule_hold"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class AutomationError(Exception):
    """Base class for all automation engine errors."""


class ConfigValidationError(AutomationError):
    """Raised when a configuration document fails validation.

    The full itemized list is carried on ``errors`` so callers can
    report every problem in a single response.
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class ExecutionError(AutomationError):
    """Raised by an action handler or transport."""

    retryable = False

    def __init__(self, message: str, kind: ErrorKind | str = ErrorKind.UNKNOWN):
        super().__init__(message)
        self.kind = ErrorKind(kind) if isinstance(kind, str) else kind


class TransientExecutionError(ExecutionError):
    """Network/timeout style failure; retried when its kind is in ``retryOn``."""

    retryable = True

    def __init__(self, message: str, kind: ErrorKind | str = ErrorKind.NETWORK_ERROR):
        super().__init__(message, kind)


class PermanentExecutionError(ExecutionError):
    """Unsupported action or bad parameters; never retried."""

    def __init__(self, message: str, kind: ErrorKind | str = ErrorKind.BAD_PARAMETERS):
        super().__init__(message, kind)


class TemplateError(PermanentExecutionError):
    """A notification template referenced a variable that was not supplied."""

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message, ErrorKind.TEMPLATE_ERROR)
        self.missing = missing or []


class SchedulingError(AutomationError):
    """Invalid cron expression or timezone on a scheduled trigger."""

    def __init__(self, message: str, trigger_id: str | None = None):
        super().__init__(message)
        self.trigger_id = trigger_id


class GuardSyntaxError(AutomationError):
    """A guard expression could not be parsed."""

    def __init__(self, message: str, expression: str, position: int | None = None):
        super().__init__(message)
        self.expression = expression
        self.position = position


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map an arbitrary exception to an ``ErrorKind`` for retry filtering."""
    if isinstance(exc, ExecutionError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorKind.NETWORK_ERROR
    return ErrorKind.UNKNOWN
