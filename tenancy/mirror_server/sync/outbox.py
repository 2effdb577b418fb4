"""
In-process propagation outbox.

Canonical-side writes report record changes here instead of running fan-out
inline. A worker loop executes queued propagation tasks one at a time; a
failing task is logged with its context and counted, and the loop moves on.

Invariants:
    - Tasks run in enqueue order
    - A task failure never stops the worker or affects other tasks
    - No retries: propagation is idempotent, re-running a change converges
    - The queue is process memory only; pending tasks are lost on exit

How to change safely:
    - Keep tasks idempotent; the outbox gives no exactly-once guarantee
    - Context passed to enqueue() ends up in log records, keep it small
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class PropagationTask:
    """A queued propagation step.

    Attributes:
        name: Task name for logs and stats
        factory: Coroutine factory doing the work
        context: Structured context logged on failure
        enqueued_at: Enqueue time (Unix seconds)
    """

    name: str
    factory: Callable[[], Awaitable[Any]]
    context: dict[str, Any] = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.time)


@dataclass
class TaskResult:
    """Result of running a propagation task."""

    task: PropagationTask
    success: bool
    result: Any = None
    error: str | None = None


class PropagationOutbox:
    """Queue plus worker loop for fire-and-forget propagation.

    Example:
        >>> outbox = PropagationOutbox()
        >>> await outbox.enqueue("record_change", lambda: engine.on_record_change(...))
        >>> worker = asyncio.create_task(outbox.run())
        >>> ...
        >>> await outbox.stop()
    """

    def __init__(self, max_pending: int = 0) -> None:
        self._queue: asyncio.Queue[PropagationTask | None] = asyncio.Queue(maxsize=max_pending)
        self._running = False
        self._processed_count = 0
        self._error_count = 0
        self._last_error: str | None = None

    async def enqueue(self, name: str, factory: Callable[[], Awaitable[Any]], **context: Any) -> None:
        """Queue a task. Waits if the queue is bounded and full."""
        await self._queue.put(PropagationTask(name=name, factory=factory, context=context))
        logger.debug("Queued propagation task", extra={"task": name, **context})

    async def _execute(self, task: PropagationTask) -> TaskResult:
        try:
            result = await task.factory()
        except Exception as e:
            self._error_count += 1
            self._last_error = str(e)
            logger.warning(
                "Propagation task failed",
                extra={"task": task.name, "error": str(e), **task.context},
                exc_info=True,
            )
            return TaskResult(task=task, success=False, error=str(e))

        self._processed_count += 1
        return TaskResult(task=task, success=True, result=result)

    async def run(self) -> None:
        """Run the worker loop until stop() is called."""
        if self._running:
            logger.warning("Outbox worker already running")
            return

        self._running = True
        logger.info("Starting outbox worker")
        try:
            while True:
                task = await self._queue.get()
                try:
                    if task is None:
                        break
                    await self._execute(task)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.info("Outbox worker cancelled")
        finally:
            self._running = False
            logger.info("Outbox worker stopped", extra=self.stats)

    async def drain(self) -> list[TaskResult]:
        """Run every pending task in the caller and wait for in-flight ones.

        A stop marker met on the way is put back for the worker.
        """
        results = []
        stop_requested = False
        while True:
            try:
                task = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            try:
                if task is None:
                    stop_requested = True
                else:
                    results.append(await self._execute(task))
            finally:
                self._queue.task_done()
        await self._queue.join()
        if stop_requested:
            await self._queue.put(None)
        return results

    async def stop(self) -> None:
        """Stop the worker after the task it is running.

        The stop marker is queued even if the worker has not started yet.
        """
        self._running = False
        await self._queue.put(None)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def stats(self) -> dict[str, Any]:
        """Get outbox statistics."""
        return {
            "running": self._running,
            "pending": self._queue.qsize(),
            "processed_count": self._processed_count,
            "error_count": self._error_count,
            "last_error": self._last_error,
        }
