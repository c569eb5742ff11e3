"""
Bounded worker pool for background indexing jobs.

Work items are queued on an asyncio.Queue and consumed by a fixed number
of worker tasks. Each submission returns a TaskHandle the caller can poll
or await.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger("kb.jobs")

WorkFactory = Callable[[], Awaitable[None]]


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskHandle:
    """Tracks one submitted work item."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.state = TaskState.PENDING
        self.error: Optional[BaseException] = None
        self._finished = asyncio.Event()

    async def wait(self, timeout: Optional[float] = None) -> TaskState:
        await asyncio.wait_for(self._finished.wait(), timeout)
        return self.state

    def _finish(self, state: TaskState, error: Optional[BaseException] = None) -> None:
        self.state = state
        self.error = error
        self._finished.set()

    def __repr__(self) -> str:
        return f"TaskHandle({self.name!r}, {self.state.value})"


class WorkerPool:
    """
    Fixed-size pool of asyncio workers.

    Usage:
        pool = WorkerPool(size=4)
        pool.start()
        handle = await pool.submit("job-1", lambda: run_job(...))
        await pool.stop()
    """

    def __init__(self, size: int = 4) -> None:
        if size < 1:
            raise ValueError("size must be >= 1")
        self.size = size
        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def queue_size(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"kb-worker-{i}")
            for i in range(self.size)
        ]
        logger.info("Worker pool started with %d workers", self.size)

    async def submit(self, name: str, factory: WorkFactory) -> TaskHandle:
        """Queue a work item. Returns its handle."""
        if not self._workers:
            raise RuntimeError("Worker pool is not running")

        handle = TaskHandle(name)
        await self._queue.put((handle, factory))
        logger.info("Task enqueued: %s (Queue size: %d)", name, self._queue.qsize())
        return handle

    async def join(self) -> None:
        """Wait until every queued item has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """
        Cancel running work and workers. Queued items never start.
        """
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        while not self._queue.empty():
            handle, _ = self._queue.get_nowait()
            handle._finish(TaskState.CANCELLED)
            self._queue.task_done()

        logger.info("Worker pool stopped")

    async def _worker(self, number: int) -> None:
        while True:
            handle, factory = await self._queue.get()
            handle.state = TaskState.RUNNING
            try:
                await factory()
            except asyncio.CancelledError:
                handle._finish(TaskState.CANCELLED)
                self._queue.task_done()
                raise
            except Exception as exc:
                # Keep the worker alive; the failure is recorded on the handle
                logger.exception("Unexpected error in worker %d running %s", number, handle.name)
                handle._finish(TaskState.FAILED, exc)
            else:
                handle._finish(TaskState.DONE)
            self._queue.task_done()
