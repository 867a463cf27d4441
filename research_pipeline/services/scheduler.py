"""
Deadline-bounded stage scheduling.

Every stage gets a slice of the time remaining when it starts:
``slice = max(min_ms, floor(remaining * ratio))``. The stage's primary task
races that slice; on expiry the task is cancelled through its
:class:`CancellationToken` and task cancellation, and a deterministic fallback
supplies the result. A primary that *fails* before its slice expires is not
replaced by the fallback: the failure surfaces as :class:`StageFailure`.
"""

from __future__ import annotations

import asyncio
import inspect
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar, Union

import structlog

from ..core import config
from ..core.errors import StageFailure, StageTimeout

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class Deadline:
    """Absolute monotonic instant by which a run should finish, or unbounded."""

    __slots__ = ("_at", "_clock")

    def __init__(self, at: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._at = at
        self._clock = clock

    @classmethod
    def none(cls) -> "Deadline":
        return cls(None)

    @classmethod
    def after_ms(cls, ms: Optional[float], clock: Callable[[], float] = time.monotonic) -> "Deadline":
        if ms is None:
            return cls(None, clock)
        return cls(clock() + max(0.0, ms) / 1000.0, clock)

    @property
    def bounded(self) -> bool:
        return self._at is not None

    def remaining_ms(self) -> float:
        """Milliseconds left, never negative; ``inf`` when unbounded."""
        if self._at is None:
            return math.inf
        return max(0.0, (self._at - self._clock()) * 1000.0)

    def expired(self) -> bool:
        return self.bounded and self.remaining_ms() <= 0

    def __repr__(self) -> str:
        if self._at is None:
            return "Deadline(none)"
        return f"Deadline(remaining_ms={self.remaining_ms():.0f})"


class CancellationToken:
    """Cooperative cancellation flag handed to every stage task."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self.reason)

    async def wait(self) -> None:
        await self._event.wait()


PrimaryTask = Callable[[CancellationToken], Awaitable[T]]
FallbackTask = Callable[[], Union[T, Awaitable[T]]]


@dataclass
class StageOutcome(Generic[T]):
    stage: str
    value: T
    status: str  # "completed" | "fallback"
    slice_ms: Optional[int]
    elapsed_ms: int
    stopped: bool = True
    timeout: Optional[StageTimeout] = None

    @property
    def used_fallback(self) -> bool:
        return self.status == "fallback"


def compute_slice_ms(deadline: Deadline, ratio: float, min_ms: int) -> float:
    """``max(min_ms, floor(remaining * ratio))``; ``inf`` for an unbounded deadline."""
    remaining = deadline.remaining_ms()
    if math.isinf(remaining):
        return math.inf
    return max(float(min_ms), float(math.floor(remaining * ratio)))


class StageBudgetScheduler:
    """Runs stage tasks against their deadline slice with a fallback."""

    def __init__(self, cancel_grace_ms: int = config.STAGE_CANCEL_GRACE_MS):
        self.cancel_grace_ms = cancel_grace_ms

    async def run(
        self,
        stage: str,
        deadline: Deadline,
        ratio: float,
        min_ms: int,
        primary: PrimaryTask[T],
        fallback: FallbackTask[T],
    ) -> T:
        outcome = await self.run_detailed(stage, deadline, ratio, min_ms, primary, fallback)
        return outcome.value

    async def run_detailed(
        self,
        stage: str,
        deadline: Deadline,
        ratio: float,
        min_ms: int,
        primary: PrimaryTask[T],
        fallback: FallbackTask[T],
    ) -> StageOutcome[T]:
        slice_ms = compute_slice_ms(deadline, ratio, min_ms)
        token = CancellationToken()
        started = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        if math.isinf(slice_ms):
            try:
                value = await primary(token)
            except Exception as exc:
                raise StageFailure(stage, exc) from exc
            return StageOutcome(stage, value, "completed", None, _elapsed())

        task = asyncio.ensure_future(primary(token))
        try:
            done, _ = await asyncio.wait({task}, timeout=slice_ms / 1000.0)
        except asyncio.CancelledError:
            # Hard cancellation from the caller: stop the primary too
            token.cancel("run cancelled")
            task.cancel()
            raise

        if task in done:
            exc = asyncio.CancelledError("stage task cancelled itself") if task.cancelled() else task.exception()
            if exc is not None:
                logger.warning(
                    "Stage failed before its slice expired",
                    stage=stage,
                    slice_ms=int(slice_ms),
                    elapsed_ms=_elapsed(),
                    error=str(exc),
                )
                raise StageFailure(stage, exc) from exc
            return StageOutcome(stage, task.result(), "completed", int(slice_ms), _elapsed())

        token.cancel("stage slice expired")
        task.cancel()
        stopped = await self._reconcile(task)
        timeout = StageTimeout(stage, int(slice_ms), stopped=stopped)
        logger.warning(
            "Stage slice expired; using fallback",
            stage=stage,
            slice_ms=int(slice_ms),
            elapsed_ms=_elapsed(),
            stopped=stopped,
        )

        try:
            value = fallback()
            if inspect.isawaitable(value):
                value = await value
        except Exception as exc:
            raise StageFailure(stage, exc) from exc
        return StageOutcome(stage, value, "fallback", int(slice_ms), _elapsed(), stopped, timeout)

    async def _reconcile(self, task: asyncio.Task) -> bool:
        """Give a cancelled task a short grace period; True once it has stopped."""
        if task.done():
            self._consume(task)
            return True
        await asyncio.wait({task}, timeout=self.cancel_grace_ms / 1000.0)
        if task.done():
            self._consume(task)
            return True
        # Still running; retrieve its result later so errors are not reported as unhandled
        task.add_done_callback(self._consume)
        return False

    @staticmethod
    def _consume(task: asyncio.Task) -> None:
        if not task.cancelled():
            task.exception()
