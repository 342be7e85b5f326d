"""
Work Queue - Deduplicating, rate-limited queue of reconcile requests.

Semantics follow the Kubernetes client workqueue:

* a key waiting in the queue is never queued twice;
* a key is handed to at most one worker at a time; if it is added again
  while being processed, it is queued once more when the worker calls
  :meth:`WorkQueue.done`;
* delayed adds keep the earliest deadline per key;
* rate-limited adds back off exponentially per key until :meth:`forget`.
"""

import asyncio
import logging
import random
from collections import deque
from typing import Callable, Deque, Dict, Hashable, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class QueueShutDown(Exception):
    """Raised by :meth:`WorkQueue.get` once the queue has been shut down."""


class WorkQueue:
    """
    Async work queue with per-key in-flight tracking and backoff.

    Args:
        name: Name used in log messages.
        base_delay: First backoff delay in seconds.
        max_delay: Backoff cap in seconds.
        jitter_factor: Random spread applied to each backoff (±factor).
    """

    def __init__(
        self,
        name: str,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        jitter_factor: float = 0.1,
        rand: Callable[[], float] = random.random,
    ):
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor
        self._rand = rand

        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._waiting: Dict[Hashable, Tuple[float, asyncio.TimerHandle]] = {}
        self._failures: Dict[Hashable, int] = {}
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def processing(self) -> Set[Hashable]:
        return set(self._processing)

    def add(self, key: Hashable) -> None:
        """Queue a key for processing, coalescing with any pending request."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._wakeup.set()

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue a key once ``delay`` seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._waiting.get(key)
        if existing is not None:
            if existing[0] <= deadline:
                return
            existing[1].cancel()

        handle = loop.call_later(delay, self._fire, key)
        self._waiting[key] = (deadline, handle)

    def _fire(self, key: Hashable) -> None:
        self._waiting.pop(key, None)
        self.add(key)

    def backoff_delay(self, key: Hashable) -> float:
        """Delay for the key's next rate-limited retry, without recording it."""
        failures = self._failures.get(key, 0) + 1
        delay = min(self.base_delay * (2 ** min(failures - 1, 30)), self.max_delay)
        jitter = (self._rand() * 2 - 1) * self.jitter_factor
        return delay * (1 + jitter)

    def add_rate_limited(self, key: Hashable) -> float:
        """
        Queue a key after its exponential backoff delay.

        Returns:
            The delay applied, in seconds.
        """
        delay = self.backoff_delay(key)
        self._failures[key] = self._failures.get(key, 0) + 1
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        """Reset the key's backoff after a successful reconcile."""
        self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> Hashable:
        """
        Wait for the next key and mark it in flight.

        Raises:
            QueueShutDown: When the queue is shut down.
        """
        while not self._queue:
            if self._shutting_down:
                raise QueueShutDown(self.name)
            self._wakeup.clear()
            await self._wakeup.wait()

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: Hashable) -> None:
        """Mark a key as no longer in flight, re-queueing it if it was re-added."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._wakeup.set()

    def shut_down(self) -> None:
        """Stop accepting work and release every waiting :meth:`get`."""
        self._shutting_down = True
        for _, handle in self._waiting.values():
            handle.cancel()
        self._waiting.clear()
        self._queue.clear()
        self._dirty.clear()
        self._wakeup.set()
        logger.debug(f"Work queue {self.name} shut down")

    def pending_delay(self, key: Hashable) -> Optional[float]:
        """Seconds until a delayed add for ``key`` fires, if one is scheduled."""
        waiting = self._waiting.get(key)
        if waiting is None:
            return None
        return max(0.0, waiting[0] - asyncio.get_running_loop().time())
