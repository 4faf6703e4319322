"""Built-in configuration document used when nothing has been saved yet."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

_STANDARD_RETRY = {
    "maxAttempts": 3,
    "backoffStrategy": "exponential",
    "initialDelay": 60,
    "maxDelay": 300,
    "retryOn": ["network_error", "timeout"],
}


def default_triggers() -> list[dict[str, Any]]:
    return [
        {
            "id": "trigger_episode_complete",
            "name": "Episode Completion Auto-Bill",
            "description": "Automatically initiate billing when episode is marked complete",
            "enabled": True,
            "triggerType": "episode_completion",
            "conditions": [
                {
                    "id": "cond_1",
                    "field": "episode_status",
                    "operator": "equals",
                    "value": "completed",
                    "dataType": "string",
                },
                {
                    "id": "cond_2",
                    "field": "compliance_score",
                    "operator": "greater_than",
                    "value": 85,
                    "logicalOperator": "AND",
                    "dataType": "number",
                },
            ],
            "actions": [
                {
                    "id": "act_1",
                    "actionType": "run_compliance_check",
                    "parameters": {"checkType": "full", "includeRecommendations": True},
                    "retryPolicy": dict(_STANDARD_RETRY),
                },
                {
                    "id": "act_2",
                    "actionType": "generate_ub04",
                    "parameters": {"autoSubmit": False, "validateBeforeGeneration": True},
                    "delay": 30,
                    "condition": "compliance_score >= 90",
                },
            ],
            "priority": "high",
            "lastTriggered": "2024-07-10T14:30:00Z",
            "triggerCount": 45,
            "successCount": 42,
            "failureCount": 3,
            "averageExecutionTime": 125,
            "metadata": {
                "createdBy": "system",
                "createdAt": "2024-01-01T00:00:00Z",
                "tags": ["episode", "auto-billing", "compliance"],
            },
        },
        {
            "id": "trigger_auth_expiry",
            "name": "Authorization Expiry Alert",
            "description": "Alert when authorization is expiring within 7 days",
            "enabled": True,
            "triggerType": "time_based",
            "conditions": [
                {
                    "id": "cond_3",
                    "field": "days_until_auth_expiry",
                    "operator": "less_than",
                    "value": 7,
                    "dataType": "number",
                },
                {
                    "id": "cond_4",
                    "field": "authorization_status",
                    "operator": "equals",
                    "value": "active",
                    "logicalOperator": "AND",
                    "dataType": "string",
                },
            ],
            "actions": [
                {
                    "id": "act_3",
                    "actionType": "send_notification",
                    "parameters": {
                        "type": "authorization_expiry",
                        "urgency": "high",
                        "recipients": ["authorization@company.com"],
                        "template": "auth_expiry_template",
                    },
                },
                {
                    "id": "act_4",
                    "actionType": "create_task",
                    "parameters": {
                        "title": "Renew Authorization",
                        "description": "Authorization expiring soon - renewal required",
                        "assignee": "authorization_team",
                        "priority": "high",
                        "dueDate": "+3 days",
                    },
                },
            ],
            "priority": "high",
            "schedule": {
                "expression": "0 8 * * *",
                "timezone": "America/New_York",
                "enabled": True,
                "nextRun": "2024-07-11T08:00:00Z",
            },
            "lastTriggered": "2024-07-09T09:15:00Z",
            "triggerCount": 12,
            "successCount": 12,
            "failureCount": 0,
            "averageExecutionTime": 45,
            "metadata": {
                "createdBy": "admin",
                "createdAt": "2024-01-15T00:00:00Z",
                "tags": ["authorization", "expiry", "alert"],
            },
        },
    ]


def default_thresholds() -> list[dict[str, Any]]:
    return [
        {
            "id": "threshold_compliance_score",
            "name": "Minimum Compliance Score",
            "description": "Minimum compliance score required for automatic billing",
            "category": "documentation",
            "thresholdType": "minimum_score",
            "value": 90,
            "unit": "percentage",
            "severity": "critical",
            "enabled": True,
            "autoRemediation": True,
            "remediationActions": [
                {
                    "id": "rem_1",
                    "actionType": "send_notification",
                    "parameters": {
                        "type": "compliance_violation",
                        "recipients": ["compliance@company.com"],
                    },
                    "autoExecute": True,
                    "requiresApproval": False,
                    "assignedRole": "compliance_officer",
                },
                {
                    "id": "rem_2",
                    "actionType": "create_task",
                    "parameters": {"title": "Resolve Compliance Issues", "priority": "high"},
                    "autoExecute": True,
                    "requiresApproval": False,
                    "assignedRole": "clinical_coordinator",
                },
            ],
            "violationCount": 3,
            "lastViolation": "2024-07-09T11:20:00Z",
            "escalationRules": [
                {
                    "id": "esc_1",
                    "condition": "violation_count > 5",
                    "delayMinutes": 60,
                    "escalateTo": ["manager@company.com"],
                    "actionType": "email",
                    "maxEscalations": 3,
                    "currentEscalationLevel": 0,
                }
            ],
            "applicableInsuranceTypes": ["Medicare", "Medicaid", "Commercial"],
            "applicableServiceTypes": [
                "Skilled Nursing",
                "Physical Therapy",
                "Occupational Therapy",
            ],
            "effectiveDate": "2024-01-01T00:00:00Z",
        },
        {
            "id": "threshold_skilled_nursing",
            "name": "Skilled Nursing LUPA Threshold",
            "description": "Maximum skilled nursing visits before LUPA threshold",
            "category": "frequency",
            "thresholdType": "maximum_visits",
            "value": 10,
            "unit": "count",
            "severity": "high",
            "enabled": True,
            "autoRemediation": False,
            "remediationActions": [
                {
                    "id": "rem_3",
                    "actionType": "send_notification",
                    "parameters": {
                        "type": "lupa_threshold_warning",
                        "recipients": ["clinical@company.com"],
                    },
                    "autoExecute": True,
                    "requiresApproval": False,
                    "assignedRole": "clinical_manager",
                }
            ],
            "violationCount": 1,
            "lastViolation": "2024-07-07T14:30:00Z",
            "escalationRules": [],
            "applicableInsuranceTypes": ["Medicare"],
            "applicableServiceTypes": ["Skilled Nursing"],
            "effectiveDate": "2024-01-01T00:00:00Z",
        },
    ]


def _hours(start: str, end: str, enabled: bool) -> dict[str, Any]:
    return {"start": start, "end": end, "enabled": enabled}


def default_auto_billing_config() -> dict[str, Any]:
    return {
        "enabled": True,
        "minimumComplianceScore": 90,
        "requireAllDocuments": True,
        "autoSubmitToClearingHouse": False,
        "delayBeforeSubmission": 24,
        "maxRetryAttempts": 3,
        "businessHoursOnly": True,
        "businessHours": {
            "monday": _hours("08:00", "17:00", True),
            "tuesday": _hours("08:00", "17:00", True),
            "wednesday": _hours("08:00", "17:00", True),
            "thursday": _hours("08:00", "17:00", True),
            "friday": _hours("08:00", "17:00", True),
            "saturday": _hours("09:00", "13:00", False),
            "sunday": _hours("09:00", "13:00", False),
            "timezone": "America/New_York",
        },
        "holidaySchedule": ["2024-12-25", "2024-01-01", "2024-07-04"],
        "notificationSettings": {
            "emailEnabled": True,
            "smsEnabled": False,
            "slackEnabled": True,
            "webhookEnabled": False,
            "recipients": [
                {
                    "id": "rec_1",
                    "name": "Billing Team",
                    "email": "billing@company.com",
                    "role": "billing_specialist",
                    "notificationTypes": [
                        "billing_complete",
                        "billing_error",
                        "compliance_violation",
                    ],
                    "enabled": True,
                },
                {
                    "id": "rec_2",
                    "name": "Compliance Team",
                    "email": "compliance@company.com",
                    "role": "compliance_officer",
                    "notificationTypes": ["compliance_violation", "threshold_exceeded"],
                    "enabled": True,
                },
            ],
            "escalationRules": [],
            "templates": [
                {
                    "id": "template_1",
                    "name": "Billing Complete",
                    "type": "email",
                    "subject": "Billing Complete - {{patient_name}}",
                    "body": (
                        "Billing has been completed for patient {{patient_name}} "
                        "({{patient_id}}). Total charges: ${{total_charges}}"
                    ),
                    "variables": ["patient_name", "patient_id", "total_charges"],
                }
            ],
            "rateLimiting": {
                "enabled": True,
                "maxNotificationsPerHour": 50,
                "maxNotificationsPerDay": 200,
                "cooldownPeriod": 5,
            },
        },
        "businessRules": [
            {
                "id": "rule_1",
                "name": "Medicare Episode Minimum",
                "description": "Medicare episodes must have minimum 5 visits",
                "condition": "insurance_type === 'Medicare' && visit_count < 5",
                "action": "hold_billing",
                "enabled": True,
                "priority": 1,
                "category": "insurance_rules",
                "effectiveDate": "2024-01-01T00:00:00Z",
                "executionCount": 0,
            }
        ],
        "auditSettings": {
            "enabled": True,
            "logLevel": "info",
            "retentionDays": 90,
            "includePersonalData": False,
            "auditEvents": [
                "trigger_executed",
                "threshold_violated",
                "configuration_changed",
                "billing_submitted",
            ],
        },
        "performanceSettings": {
            "maxConcurrentTriggers": 10,
            "triggerTimeout": 300,
            "batchSize": 50,
            "queueSettings": {
                "enabled": True,
                "maxQueueSize": 1000,
                "processingInterval": 30,
                "priorityLevels": 3,
                "deadLetterQueue": True,
            },
        },
    }


def default_document(now: datetime | None = None) -> dict[str, Any]:
    """The full default configuration document."""
    now = now or datetime.now(timezone.utc)
    return {
        "triggers": default_triggers(),
        "thresholds": default_thresholds(),
        "config": default_auto_billing_config(),
        "lastUpdated": now.isoformat(),
        "version": "1.0.0",
    }
