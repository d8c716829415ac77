from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Optional

from memcore.core.errors import MemoryEngineError
from memcore.core.security import preview

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexJob:
    """Embed one stored memory and attach the vector."""

    owner_id: str
    memory_id: str
    content: str


IndexHandler = Callable[[IndexJob], Awaitable[None]]


class EmbeddingIndexer:
    """Bounded work queue plus a small worker pool for embedding writes.

    ``submit`` never blocks: when the queue is full the job is dropped with a
    warning and counted. Workers start on the first submit.
    """

    _BACKOFF_DELAYS = (0.2, 1.0)

    def __init__(self, handler: IndexHandler, *, queue_size: int = 256, workers: int = 2) -> None:
        self._handler = handler
        self._queue: asyncio.Queue[IndexJob] = asyncio.Queue(maxsize=max(1, queue_size))
        self._worker_count = max(1, workers)
        self._workers: list[asyncio.Task] = []
        self._closed = False
        self.processed = 0
        self.failed = 0
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, job: IndexJob) -> bool:
        if self._closed:
            logger.warning("Embedding indexer is shut down; dropping job for %s", job.memory_id)
            self.dropped += 1
            return False
        self._ensure_workers()
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Embedding queue full (%d pending); dropping job for %s",
                self._queue.qsize(),
                job.memory_id,
            )
            return False
        return True

    async def index_now(self, job: IndexJob) -> bool:
        """Run one job inline, bypassing the queue."""

        return await self._run(job)

    async def join(self) -> None:
        """Wait until every queued job has been handled."""

        if self._workers:
            await self._queue.join()

    async def shutdown(self, *, drain: bool = True) -> None:
        self._closed = True
        if drain:
            await self.join()
        workers = list(self._workers)
        self._workers.clear()
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    def _ensure_workers(self) -> None:
        self._workers = [task for task in self._workers if not task.done()]
        while len(self._workers) < self._worker_count:
            index = len(self._workers)
            self._workers.append(
                asyncio.create_task(self._worker_loop(), name=f"memcore-indexer-{index}")
            )

    async def _worker_loop(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    async def _run(self, job: IndexJob) -> bool:
        attempt = 0
        while True:
            try:
                await self._handler(job)
            except MemoryEngineError as exc:
                delay = self._next_backoff(attempt) if exc.retryable else None
                if delay is None:
                    self.failed += 1
                    logger.warning(
                        "Embedding job for %s (%r) failed: %s [%s]",
                        job.memory_id,
                        preview(job.content),
                        exc.message,
                        exc.code,
                    )
                    return False
                attempt += 1
                await asyncio.sleep(delay)
                continue
            except Exception:  # noqa: BLE001
                self.failed += 1
                logger.exception("Embedding job for %s failed", job.memory_id)
                return False
            self.processed += 1
            return True

    @classmethod
    def _next_backoff(cls, attempt: int) -> Optional[float]:
        if attempt >= len(cls._BACKOFF_DELAYS):
            return None
        return cls._BACKOFF_DELAYS[attempt]
