"""Bounded priority queue of execution requests.

Three priority levels, FIFO within a level. Requests with a future
``not_before`` wait in a delayed heap and are promoted once due. When the
queue is full the lowest-priority, newest request is rejected, whether
that is the incoming request or one already queued.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from .models import Action, Priority

logger = logging.getLogger(__name__)


class RequestOrigin(str, Enum):
    TRIGGER = "trigger"
    THRESHOLD = "threshold"
    REPLAY = "replay"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExecutionRequest:
    """A unit of work for the worker pool: one action chain for one subject."""

    origin: RequestOrigin
    source_id: str
    subject_id: str
    actions: tuple[Action, ...]
    priority: Priority = Priority.MEDIUM
    context: dict[str, Any] = field(default_factory=dict)
    resume_index: int = 0
    not_before: datetime | None = None
    dispatch_attempt: int = 1
    active_seconds: float = 0.0
    action_results: list[dict[str, Any]] = field(default_factory=list)
    dead_letter_id: str | None = None
    # Attempt left running by a pass that timed out
    abandoned: Future | None = field(default=None, repr=False, compare=False)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    sequence: int = 0

    @property
    def started(self) -> bool:
        """True once a pass has run; the request then owns an open execution."""
        return bool(self.action_results)

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "origin": self.origin.value,
            "sourceId": self.source_id,
            "subjectId": self.subject_id,
            "priority": self.priority.value,
            "resumeIndex": self.resume_index,
            "notBefore": self.not_before.isoformat() if self.not_before else None,
            "dispatchAttempt": self.dispatch_attempt,
        }


class ExecutionQueue:
    """Thread-safe bounded priority queue with delayed entries."""

    def __init__(
        self,
        max_size: int = 1000,
        priority_levels: int = 3,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._max_size = max_size
        self._levels = priority_levels
        self._clock = clock or _utcnow
        self._ready: list[deque[ExecutionRequest]] = [deque() for _ in range(3)]
        self._delayed: list[tuple[datetime, int, ExecutionRequest]] = []
        self._counter = itertools.count(1)
        self._cond = threading.Condition()
        self._closed = False

    def configure(self, max_size: int, priority_levels: int) -> None:
        """Apply new limits; existing entries are kept."""
        with self._cond:
            self._max_size = max_size
            self._levels = priority_levels

    def _rank(self, request: ExecutionRequest) -> int:
        return min(request.priority.rank, self._levels - 1)

    def __len__(self) -> int:
        with self._cond:
            return self._size()

    def _size(self) -> int:
        return sum(len(level) for level in self._ready) + len(self._delayed)

    def _entries(self):
        for level in self._ready:
            yield from level
        for _, _, request in self._delayed:
            yield request

    def _remove(self, victim: ExecutionRequest) -> None:
        for level in self._ready:
            if victim in level:
                level.remove(victim)
                return
        self._delayed = [item for item in self._delayed if item[2] is not victim]
        heapq.heapify(self._delayed)

    def put(self, request: ExecutionRequest) -> ExecutionRequest | None:
        """Enqueue a request.

        Returns:
            The rejected request when the queue was full (the incoming one or
            an evicted lower-priority one), otherwise None
        """
        with self._cond:
            request.sequence = next(self._counter)
            rejected: ExecutionRequest | None = None

            if self._size() >= self._max_size:
                victim = max(
                    self._entries(),
                    key=lambda r: (self._rank(r), r.sequence),
                    default=None,
                )
                if victim is None or (self._rank(victim), victim.sequence) < (
                    self._rank(request),
                    request.sequence,
                ):
                    logger.warning(
                        f"Execution queue full ({self._max_size}); rejecting request "
                        f"{request.id} for {request.source_id}"
                    )
                    return request
                self._remove(victim)
                rejected = victim
                logger.warning(
                    f"Execution queue full ({self._max_size}); evicted {victim.priority.value} "
                    f"request {victim.id} for {victim.source_id}"
                )

            if request.not_before is not None and request.not_before > self._clock():
                heapq.heappush(self._delayed, (request.not_before, request.sequence, request))
            else:
                self._ready[self._rank(request)].append(request)
            self._cond.notify()
            return rejected

    def _promote(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, request = heapq.heappop(self._delayed)
            self._ready[self._rank(request)].append(request)

    def get(self, timeout: float | None = None) -> ExecutionRequest | None:
        """Take the next ready request, highest priority first.

        Args:
            timeout: Seconds to wait; None waits until a request is ready or
                the queue is closed, 0 never waits

        Returns:
            A request, or None on timeout or close
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    return None
                self._promote()
                for level in self._ready:
                    if level:
                        return level.popleft()

                wait = None
                if self._delayed:
                    due = (self._delayed[0][0] - self._clock()).total_seconds()
                    wait = max(due, 0.01)
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self) -> None:
        with self._cond:
            self._closed = False

    def stats(self) -> dict[str, Any]:
        with self._cond:
            return {
                "size": self._size(),
                "maxSize": self._max_size,
                "ready": {
                    priority.value: len(self._ready[priority.rank]) for priority in Priority
                },
                "delayed": len(self._delayed),
            }
