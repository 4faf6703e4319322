"""Fact model: immutable, timestamped observations emitted by collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class FactCategory(str, Enum):
    """Semantic category of a fact.

    Values line up with trigger types so the registry can route a fact
    to the triggers that listen for it.
    """

    EPISODE_COMPLETION = "episode_completion"
    TIME_BASED = "time_based"
    VISIT_COUNT = "visit_count"
    AUTHORIZATION_EXPIRY = "authorization_expiry"
    MANUAL = "manual"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Fact:
    """A typed key/value snapshot of an event for one subject."""

    subject_id: str
    category: FactCategory
    data: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)
    source: str = "external"

    def __post_init__(self) -> None:
        # Freeze the payload; callers keep their own dict.
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))
        if isinstance(self.category, str) and not isinstance(self.category, FactCategory):
            object.__setattr__(self, "category", FactCategory(self.category))

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def __contains__(self, key: object) -> bool:
        return key in self.data

    def as_dict(self) -> dict[str, Any]:
        """Flatten into the variable map used by condition evaluation."""
        return {
            **self.data,
            "subject_id": self.subject_id,
            "fact_category": self.category.value,
            "fact_timestamp": self.timestamp.isoformat(),
        }


def synthetic_fact(trigger_id: str, fired_at: datetime) -> Fact:
    """Fact used for a scheduled firing when no fact source supplies data."""
    return Fact(
        subject_id=trigger_id,
        category=FactCategory.TIME_BASED,
        data={"scheduled_at": fired_at.isoformat()},
        timestamp=fired_at,
        source="scheduler",
    )
