"""Trigger registry: routes facts to the triggers listening for them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from utils import sanitize_log_value

from .conditions import ConditionTrace, trace_conditions
from .execution_queue import ExecutionRequest, RequestOrigin
from .facts import Fact
from .models import AutomationConfig, Trigger

logger = logging.getLogger(__name__)


@dataclass
class TriggerMatch:
    trigger_id: str
    matched: bool
    traces: list[ConditionTrace] = field(default_factory=list)
    request_id: str | None = None
    accepted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "triggerId": self.trigger_id,
            "matched": self.matched,
            "requestId": self.request_id,
            "accepted": self.accepted,
            "conditions": [trace.to_dict() for trace in self.traces],
        }


def execution_context(trigger: Trigger, fact: Fact, fired_at: datetime | None = None) -> dict[str, Any]:
    """Fact fields plus trigger metadata."""
    context = fact.as_dict()
    context.update(
        {
            "trigger_id": trigger.id,
            "trigger_name": trigger.name,
            "trigger_type": trigger.trigger_type.value,
            "trigger_priority": trigger.priority.value,
            "fired_at": (fired_at or fact.timestamp).isoformat(),
        }
    )
    return context


def build_request(trigger: Trigger, fact: Fact, fired_at: datetime | None = None) -> ExecutionRequest:
    return ExecutionRequest(
        origin=RequestOrigin.TRIGGER,
        source_id=trigger.id,
        subject_id=fact.subject_id,
        actions=tuple(trigger.actions),
        priority=trigger.priority,
        context=execution_context(trigger, fact, fired_at),
    )


class TriggerRegistry:
    """Matches facts against the enabled triggers of the current snapshot."""

    def __init__(
        self,
        config: Callable[[], AutomationConfig],
        submit: Callable[[ExecutionRequest], Any],
    ) -> None:
        self._config = config
        self._submit = submit

    def listeners(self, fact: Fact) -> list[Trigger]:
        return [
            trigger
            for trigger in self._config().triggers
            if trigger.enabled and trigger.trigger_type.value == fact.category.value
        ]

    def fire(self, trigger: Trigger, fact: Fact, fired_at: datetime | None = None) -> ExecutionRequest | None:
        """Submit the trigger's chain; returns the request if it was accepted."""
        request = build_request(trigger, fact, fired_at)
        if not self._submit(request):
            return None
        logger.info(f"Trigger {trigger.id} fired for {sanitize_log_value(fact.subject_id)}")
        return request

    def on_fact(self, fact: Fact) -> list[TriggerMatch]:
        """Evaluate every listening trigger and submit the ones that match."""
        matches = []
        for trigger in self.listeners(fact):
            matched, traces = trace_conditions(trigger.conditions, fact)
            match = TriggerMatch(trigger_id=trigger.id, matched=matched, traces=traces)
            if matched:
                request = build_request(trigger, fact)
                match.request_id = request.id
                match.accepted = bool(self._submit(request))
                if match.accepted:
                    logger.info(
                        f"Trigger {trigger.id} fired for {sanitize_log_value(fact.subject_id)}"
                    )
            matches.append(match)
        return matches
