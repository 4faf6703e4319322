"""Pydantic models for the billing automation configuration document.

The document is the unit of load/save for the engine:
``{triggers, thresholds, config, lastUpdated, version}``. Field names use
camelCase on the wire (matching the persisted JSON) and snake_case in
Python. Unknown keys are preserved so a document round-trips unchanged.

Snapshots handed out by the config store are frozen; runtime counters are
tracked separately in ``automation.runtime``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Naive timestamps in a document are read as UTC.
UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]


class TriggerType(str, Enum):
    EPISODE_COMPLETION = "episode_completion"
    TIME_BASED = "time_based"
    VISIT_COUNT = "visit_count"
    AUTHORIZATION_EXPIRY = "authorization_expiry"
    MANUAL = "manual"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Queue rank; lower drains first."""
        return {"high": 0, "medium": 1, "low": 2}[self.value]


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"


class DataType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    """Action types shared by trigger chains and threshold remediation."""

    GENERATE_UB04 = "generate_ub04"
    RUN_COMPLIANCE_CHECK = "run_compliance_check"
    SUBMIT_CLAIM = "submit_claim"
    SEND_NOTIFICATION = "send_notification"
    CREATE_TASK = "create_task"
    UPDATE_STATUS = "update_status"
    CALL_WEBHOOK = "call_webhook"
    CALL_API = "call_api"
    GENERATE_REPORT = "generate_report"


TRIGGER_ACTION_TYPES = frozenset(
    {
        ActionType.GENERATE_UB04,
        ActionType.RUN_COMPLIANCE_CHECK,
        ActionType.SUBMIT_CLAIM,
        ActionType.SEND_NOTIFICATION,
        ActionType.CREATE_TASK,
        ActionType.UPDATE_STATUS,
        ActionType.CALL_WEBHOOK,
    }
)

REMEDIATION_ACTION_TYPES = frozenset(
    {
        ActionType.SEND_NOTIFICATION,
        ActionType.CREATE_TASK,
        ActionType.UPDATE_STATUS,
        ActionType.CALL_API,
        ActionType.GENERATE_REPORT,
    }
)


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class ThresholdCategory(str, Enum):
    DOCUMENTATION = "documentation"
    CODING = "coding"
    AUTHORIZATION = "authorization"
    FREQUENCY = "frequency"
    ELIGIBILITY = "eligibility"
    QUALITY = "quality"
    FINANCIAL = "financial"


class ThresholdType(str, Enum):
    MINIMUM_SCORE = "minimum_score"
    MAXIMUM_VISITS = "maximum_visits"
    REQUIRED_DOCUMENTS = "required_documents"
    TIME_LIMIT = "time_limit"
    PERCENTAGE = "percentage"
    AMOUNT = "amount"


class Unit(str, Enum):
    PERCENTAGE = "percentage"
    COUNT = "count"
    DAYS = "days"
    HOURS = "hours"
    DOLLARS = "dollars"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    def to_priority(self) -> Priority:
        if self in (Severity.CRITICAL, Severity.HIGH):
            return Priority.HIGH
        if self is Severity.MEDIUM:
            return Priority.MEDIUM
        return Priority.LOW


class EscalationActionType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    CALL = "call"
    CREATE_TICKET = "create_ticket"
    WEBHOOK = "webhook"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    SLACK = "slack"
    WEBHOOK = "webhook"
    CALL = "call"


class BusinessRuleAction(str, Enum):
    HOLD_BILLING = "hold_billing"
    RELEASE_BILLING = "release_billing"
    REQUIRE_REVIEW = "require_review"
    FLAG_FOR_AUDIT = "flag_for_audit"


class AuditLogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return {"debug": 10, "info": 20, "warn": 30, "error": 40}[self.value]


class ConfigModel(BaseModel):
    """Base for document models: camelCase aliases, frozen, extra keys kept."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
        use_enum_values=False,
    )


# --- Trigger side ---


class Condition(ConfigModel):
    id: str | None = None
    field: str = Field(..., min_length=1)
    operator: ConditionOperator
    value: Any = None
    data_type: DataType = DataType.STRING
    logical_operator: LogicalOperator | None = None
    case_sensitive: bool | None = None


class RetryPolicy(ConfigModel):
    max_attempts: int = Field(default=3, ge=1, le=25)
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: float = Field(default=60, ge=0)
    max_delay: float = Field(default=300, ge=0)
    retry_on: list[str] = Field(default_factory=lambda: ["network_error", "timeout"])


class Action(ConfigModel):
    """One step of a trigger chain (or a remediation step, once converted)."""

    id: str | None = None
    action_type: ActionType
    parameters: dict[str, Any] = Field(default_factory=dict)
    delay_minutes: float | None = Field(
        default=None,
        ge=0,
        alias="delay",
        validation_alias=AliasChoices("delay", "delayMinutes", "delay_minutes"),
    )
    retry_policy: RetryPolicy | None = None
    condition: str | None = None


class Schedule(ConfigModel):
    expression: str = Field(
        ...,
        validation_alias=AliasChoices("expression", "cronExpression", "cron_expression"),
    )
    timezone: str = "UTC"
    enabled: bool = True
    next_run: UtcDatetime | None = None


class Trigger(ConfigModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str | None = None
    enabled: bool = True
    trigger_type: TriggerType
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    schedule: Schedule | None = None
    last_triggered: UtcDatetime | None = None
    trigger_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)
    average_execution_time: float = Field(default=0, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


# --- Threshold side ---


class RemediationAction(ConfigModel):
    id: str | None = None
    action_type: ActionType
    parameters: dict[str, Any] = Field(default_factory=dict)
    auto_execute: bool = False
    requires_approval: bool = False
    assigned_role: str | None = None
    retry_policy: RetryPolicy | None = None

    def to_action(self) -> Action:
        """Express this remediation step through the shared Action shape."""
        return Action(
            id=self.id,
            action_type=self.action_type,
            parameters=dict(self.parameters),
            retry_policy=self.retry_policy,
        )


class EscalationRule(ConfigModel):
    id: str | None = None
    condition: str = Field(..., min_length=1)
    delay_minutes: float = Field(default=0, ge=0)
    escalate_to: list[str] = Field(default_factory=list)
    action_type: EscalationActionType
    max_escalations: int = Field(default=3, ge=0)
    current_escalation_level: int = Field(default=0, ge=0)


class ComplianceThreshold(ConfigModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str | None = None
    category: ThresholdCategory
    threshold_type: ThresholdType
    value: float
    unit: Unit
    severity: Severity
    enabled: bool = True
    auto_remediation: bool = False
    remediation_actions: list[RemediationAction] = Field(default_factory=list)
    violation_count: int = Field(default=0, ge=0)
    last_violation: UtcDatetime | None = None
    escalation_rules: list[EscalationRule] = Field(default_factory=list)
    applicable_insurance_types: list[str] = Field(default_factory=list)
    applicable_service_types: list[str] = Field(default_factory=list)
    effective_date: UtcDatetime
    expiration_date: UtcDatetime | None = None
    required_documents: list[str] | None = None


# --- Process-wide configuration ---


class DayHours(ConfigModel):
    start: str = "08:00"
    end: str = "17:00"
    enabled: bool = True

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        if not HHMM_PATTERN.match(v):
            raise ValueError(f"Invalid time '{v}', expected HH:MM")
        return v


def _weekday(enabled: bool = True) -> DayHours:
    return DayHours(enabled=enabled)


class BusinessHours(ConfigModel):
    monday: DayHours = Field(default_factory=_weekday)
    tuesday: DayHours = Field(default_factory=_weekday)
    wednesday: DayHours = Field(default_factory=_weekday)
    thursday: DayHours = Field(default_factory=_weekday)
    friday: DayHours = Field(default_factory=_weekday)
    saturday: DayHours = Field(default_factory=lambda: _weekday(False))
    sunday: DayHours = Field(default_factory=lambda: _weekday(False))
    timezone: str = "UTC"

    def for_weekday(self, weekday: int) -> DayHours:
        """Hours for ``datetime.weekday()`` (Monday == 0)."""
        names = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
        return getattr(self, names[weekday])


class NotificationRecipient(ConfigModel):
    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    slack_user_id: str | None = None
    webhook_url: str | None = None
    role: str
    notification_types: list[str] = Field(default_factory=list)
    enabled: bool = True


class NotificationTemplate(ConfigModel):
    id: str
    name: str
    type: NotificationChannel
    subject: str | None = None
    body: str
    variables: list[str] = Field(default_factory=list)


class RateLimitConfig(ConfigModel):
    enabled: bool = True
    max_notifications_per_hour: int = Field(default=50, ge=0)
    max_notifications_per_day: int = Field(default=200, ge=0)
    cooldown_period: float = Field(default=5, ge=0)


class NotificationSettings(ConfigModel):
    email_enabled: bool = True
    sms_enabled: bool = False
    slack_enabled: bool = False
    webhook_enabled: bool = False
    recipients: list[NotificationRecipient] = Field(default_factory=list)
    escalation_rules: list[EscalationRule] = Field(default_factory=list)
    templates: list[NotificationTemplate] = Field(default_factory=list)
    rate_limiting: RateLimitConfig = Field(default_factory=RateLimitConfig)

    def channel_enabled(self, channel: NotificationChannel) -> bool:
        if channel is NotificationChannel.EMAIL:
            return self.email_enabled
        if channel in (NotificationChannel.SMS, NotificationChannel.CALL):
            return self.sms_enabled
        if channel is NotificationChannel.SLACK:
            return self.slack_enabled
        return self.webhook_enabled


class BusinessRule(ConfigModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str | None = None
    condition: str = Field(..., min_length=1)
    action: BusinessRuleAction
    enabled: bool = True
    priority: int = 100
    category: str | None = None
    effective_date: UtcDatetime
    expiration_date: UtcDatetime | None = None
    last_executed: UtcDatetime | None = None
    execution_count: int = Field(default=0, ge=0)


class AuditSettings(ConfigModel):
    enabled: bool = True
    log_level: AuditLogLevel = AuditLogLevel.INFO
    retention_days: int = Field(default=90, ge=1)
    include_personal_data: bool = False
    audit_events: list[str] = Field(default_factory=list)


class QueueSettings(ConfigModel):
    enabled: bool = True
    max_queue_size: int = Field(default=1000, ge=1)
    processing_interval: float = Field(default=30, ge=0)
    priority_levels: int = Field(default=3, ge=1, le=3)
    dead_letter_queue: bool = True


class PerformanceSettings(ConfigModel):
    max_concurrent_triggers: int = Field(default=10, ge=1, le=256)
    trigger_timeout: float = Field(default=300, gt=0)
    batch_size: int = Field(default=50, ge=1)
    queue_settings: QueueSettings = Field(default_factory=QueueSettings)


class AutoBillingConfig(ConfigModel):
    enabled: bool = True
    minimum_compliance_score: float = Field(default=90, ge=0, le=100)
    require_all_documents: bool = True
    auto_submit_to_clearing_house: bool = False
    delay_before_submission: float = Field(default=24, ge=0)
    max_retry_attempts: int = Field(default=3, ge=1)
    business_hours_only: bool = False
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    holiday_schedule: list[str] = Field(default_factory=list)
    notification_settings: NotificationSettings = Field(default_factory=NotificationSettings)
    business_rules: list[BusinessRule] = Field(default_factory=list)
    audit_settings: AuditSettings = Field(default_factory=AuditSettings)
    performance_settings: PerformanceSettings = Field(default_factory=PerformanceSettings)


class AutomationConfig(ConfigModel):
    """The persisted configuration document."""

    triggers: list[Trigger] = Field(default_factory=list)
    thresholds: list[ComplianceThreshold] = Field(default_factory=list)
    config: AutoBillingConfig = Field(default_factory=AutoBillingConfig)
    last_updated: UtcDatetime | None = None
    version: str = "1.0.0"

    def trigger(self, trigger_id: str) -> Trigger | None:
        return next((t for t in self.triggers if t.id == trigger_id), None)

    def threshold(self, threshold_id: str) -> ComplianceThreshold | None:
        return next((t for t in self.thresholds if t.id == threshold_id), None)

    def to_document(self) -> dict[str, Any]:
        """Serialize to the camelCase JSON document."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)
