from __future__ import annotations

import threading
from collections import deque

from memcore.memory.types import MemoryCandidate

DEFAULT_DEFERRED_LIMIT = 10


class DeferredQueue:
    """Per-owner holding area for candidates in the defer band.

    Each owner keeps at most ``limit`` candidates; the oldest one is dropped
    when a new candidate arrives at a full queue.
    """

    def __init__(self, limit: int = DEFAULT_DEFERRED_LIMIT) -> None:
        self._limit = max(1, limit)
        self._queues: dict[str, deque[MemoryCandidate]] = {}
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    def push(self, candidate: MemoryCandidate) -> None:
        with self._lock:
            queue = self._queues.get(candidate.owner_id)
            if queue is None:
                queue = deque(maxlen=self._limit)
                self._queues[candidate.owner_id] = queue
            queue.append(candidate)

    def drain(self, owner_id: str) -> list[MemoryCandidate]:
        """Remove and return the owner's deferred candidates, oldest first."""

        with self._lock:
            queue = self._queues.pop(owner_id, None)
        return list(queue) if queue is not None else []

    def count(self, owner_id: str) -> int:
        with self._lock:
            queue = self._queues.get(owner_id)
            return len(queue) if queue is not None else 0
