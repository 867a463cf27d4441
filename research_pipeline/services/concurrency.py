"""
Bounded-concurrency executor for coroutine factories.

At most ``max_concurrent`` tasks run at once; the rest wait in a FIFO queue and
start exactly when a slot frees. The running counter and the queue are only
touched from synchronous code on the event loop (``submit`` and the task
done-callback), so no interleaving can admit more than the limit.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Sequence, Tuple, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")
TaskFactory = Callable[[], Awaitable[T]]


class BoundedConcurrencyExecutor:
    """Caps in-flight tasks; queues the excess in arrival order."""

    def __init__(self, max_concurrent: int = 5, *, name: str = "executor"):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self.name = name
        self._running = 0
        self._queue: Deque[Tuple[TaskFactory, asyncio.Future]] = deque()
        self._tasks: set[asyncio.Task] = set()
        self.completed = 0
        self.failed = 0

    def submit(self, factory: TaskFactory[T]) -> "asyncio.Future[T]":
        """Schedule ``factory()``; returns a future resolving to its result.

        Cancelling the returned future cancels the task (or drops it from the
        queue if it has not started yet).
        """
        loop = asyncio.get_running_loop()
        handle: asyncio.Future = loop.create_future()
        if self._running < self.max_concurrent:
            self._start(factory, handle)
        else:
            self._queue.append((factory, handle))
        return handle

    async def run(self, factory: TaskFactory[T]) -> T:
        return await self.submit(factory)

    def _start(self, factory: TaskFactory, handle: asyncio.Future) -> None:
        self._running += 1
        try:
            task = asyncio.ensure_future(factory())
        except Exception as exc:
            # Factory raised synchronously; release the slot right away
            self._running -= 1
            self.failed += 1
            if not handle.done():
                handle.set_exception(exc)
            self._drain()
            return
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, handle))
        handle.add_done_callback(lambda h: task.cancel() if h.cancelled() and not task.done() else None)

    def _on_done(self, task: asyncio.Task, handle: asyncio.Future) -> None:
        self._tasks.discard(task)
        self._running -= 1
        if task.cancelled():
            if not handle.done():
                handle.cancel()
        elif task.exception() is not None:
            self.failed += 1
            if not handle.done():
                handle.set_exception(task.exception())
        else:
            self.completed += 1
            if not handle.done():
                handle.set_result(task.result())
        self._drain()

    def _drain(self) -> None:
        while self._running < self.max_concurrent and self._queue:
            factory, handle = self._queue.popleft()
            if handle.cancelled():
                continue
            self._start(factory, handle)

    async def process_batch(
        self,
        factories: Sequence[TaskFactory[T]],
        batch_size: int = 3,
        *,
        return_exceptions: bool = False,
    ) -> List[Any]:
        """Run ``factories`` in sequential batches; results keep submission order."""
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        results: List[Any] = []
        for start in range(0, len(factories), batch_size):
            batch = [self.submit(f) for f in factories[start:start + batch_size]]
            results.extend(await asyncio.gather(*batch, return_exceptions=return_exceptions))
        return results

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "running": self._running,
            "queued": len(self._queue),
            "max_concurrent": self.max_concurrent,
            "completed": self.completed,
            "failed": self.failed,
        }

    async def shutdown(self) -> None:
        """Drop queued work and cancel running tasks."""
        while self._queue:
            _, handle = self._queue.popleft()
            handle.cancel()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("Executor shut down", executor=self.name, cancelled=len(tasks))
