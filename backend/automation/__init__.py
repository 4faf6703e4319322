"""Compliance-driven billing automation.

Triggers and compliance thresholds are declared in one versioned
configuration document; the engine in :mod:`automation.engine` evaluates
them against incoming facts and scheduled ticks and runs their action
chains. Import the engine from its module; this package only re-exports
the document models and the error taxonomy.
"""

from .errors import (
    AutomationError,
    ConfigValidationError,
    ErrorKind,
    ExecutionError,
    GuardSyntaxError,
    PermanentExecutionError,
    SchedulingError,
    TemplateError,
    TransientExecutionError,
)
from .facts import Fact, FactCategory
from .models import (
    Action,
    AutoBillingConfig,
    AutomationConfig,
    ComplianceThreshold,
    Condition,
    EscalationRule,
    RetryPolicy,
    Trigger,
)

__all__ = [
    "Action",
    "AutoBillingConfig",
    "AutomationConfig",
    "AutomationError",
    "ComplianceThreshold",
    "Condition",
    "ConfigValidationError",
    "ErrorKind",
    "EscalationRule",
    "ExecutionError",
    "Fact",
    "FactCategory",
    "GuardSyntaxError",
    "PermanentExecutionError",
    "RetryPolicy",
    "SchedulingError",
    "TemplateError",
    "TransientExecutionError",
    "Trigger",
]
