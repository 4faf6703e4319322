"""Worker pool that drains the execution queue.

Each worker is a daemon thread taking one request at a time; a chain
runs start to finish on the worker that took it. A failing request never
stops its worker.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from automation.execution_queue import ExecutionQueue, ExecutionRequest

logger = logging.getLogger(__name__)

# Seconds a worker waits on an empty queue before rechecking its stop flag.
POLL_INTERVAL = 0.5


class WorkerPool:
    """Fixed-size pool of worker threads bound to one queue."""

    def __init__(
        self,
        queue: ExecutionQueue,
        handler: Callable[[ExecutionRequest], Any],
        size: int = 10,
        name: str = "automation-worker",
    ) -> None:
        """Initialize the pool.

        Args:
            queue: Source of execution requests
            handler: Runs one request; exceptions are logged
            size: Number of worker threads (maxConcurrentTriggers)
            name: Thread name prefix
        """
        self._queue = queue
        self._handler = handler
        self._size = size
        self._name = name
        self._lock = threading.Lock()
        self._threads: dict[int, threading.Thread] = {}
        self._stop = threading.Event()
        self._busy = 0
        self._started = False

    @property
    def size(self) -> int:
        return self._size

    @property
    def running(self) -> bool:
        return self._started

    @property
    def busy(self) -> int:
        with self._lock:
            return self._busy

    def _spawn(self, slot: int) -> None:
        thread = threading.Thread(
            target=self._run,
            args=(slot,),
            name=f"{self._name}-{slot}",
            daemon=True,
        )
        self._threads[slot] = thread
        thread.start()

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._stop.clear()
            self._started = True
            for slot in range(self._size):
                self._spawn(slot)
        logger.info(f"Started {self._size} automation workers")

    def stop(self, timeout: float = 5.0) -> None:
        """Signal every worker and wait for in-flight requests to finish."""
        with self._lock:
            if not self._started:
                return
            self._stop.set()
            self._started = False
            threads = list(self._threads.values())
            self._threads.clear()
        for thread in threads:
            thread.join(timeout)
        logger.info("Automation workers stopped")

    def resize(self, size: int) -> None:
        """Grow or shrink the pool; surplus workers exit after their current request."""
        with self._lock:
            previous, self._size = self._size, size
            if self._started:
                for slot in range(previous, size):
                    if slot not in self._threads:
                        self._spawn(slot)
        if previous != size:
            logger.info(f"Worker pool resized from {previous} to {size}")

    def _retired(self, slot: int) -> bool:
        with self._lock:
            if slot < self._size:
                return False
            if self._threads.get(slot) is threading.current_thread():
                del self._threads[slot]
            return True

    def _run(self, slot: int) -> None:
        while not self._stop.is_set() and not self._retired(slot):
            request = self._queue.get(timeout=POLL_INTERVAL)
            if request is None:
                continue
            with self._lock:
                self._busy += 1
            try:
                self._handler(request)
            except Exception:
                logger.exception(
                    f"Worker failed on request {request.id} for {request.source_id}"
                )
            finally:
                with self._lock:
                    self._busy -= 1
