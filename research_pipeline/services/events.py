"""
Event sink facade
-----------------
The orchestrator reports stage boundaries, results and streamed draft chunks
through ``emit(event, payload)``. Sinks may be sync or async; the transport
layer (SSE, websockets, a terminal) maps events onto its own wire format.
"""

from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union

import structlog

logger = structlog.get_logger(__name__)

Payload = Dict[str, Any]


class EventType(str, Enum):
    """Events emitted during a run, in pipeline order"""

    STAGE = "stage"
    PLAN = "plan"
    SOURCES = "sources"
    FACTS = "facts"
    ANALYSIS = "analysis"
    WRITER = "writer"
    DRAFT = "draft"
    FACT_CHECK = "factcheck"
    CRITIQUE = "critique"
    CREDIBILITY = "credibility"
    TOKENS = "tokens"
    DONE = "done"
    ERROR = "error"


class EventSink(Protocol):
    def emit(self, event: str, payload: Payload) -> Union[None, Awaitable[None]]: ...


class NoOpEventSink:
    def emit(self, event: str, payload: Payload) -> None:
        return None


class CallbackEventSink:
    """Adapts a plain ``callback(event, payload)`` (sync or async) to a sink."""

    def __init__(self, callback: Callable[[str, Payload], Any]):
        self._callback = callback

    async def emit(self, event: str, payload: Payload) -> None:
        result = self._callback(event, payload)
        if inspect.isawaitable(result):
            await result


class QueueEventSink:
    """Buffers events on an asyncio queue for a transport writer to pump.

    ``None`` is put on the queue once :meth:`close` is called.
    """

    def __init__(self, maxsize: int = 0):
        self.queue: "asyncio.Queue[Optional[Tuple[str, Payload]]]" = asyncio.Queue(maxsize=maxsize)

    async def emit(self, event: str, payload: Payload) -> None:
        await self.queue.put((event, payload))

    async def close(self) -> None:
        await self.queue.put(None)


class RecordingEventSink:
    """Keeps every event in memory; used by the CLI's ``--json`` mode and tests."""

    def __init__(self):
        self.events: List[Tuple[str, Payload]] = []

    def emit(self, event: str, payload: Payload) -> None:
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def payloads(self, event: str) -> List[Payload]:
        return [payload for name, payload in self.events if name == event]


async def emit_event(sink: Any, event: Union[str, EventType], payload: Payload) -> None:
    """Deliver one event to a sink or a bare ``emit`` callable; sink failures are logged and never abort the run."""
    name = event.value if isinstance(event, EventType) else str(event)
    emit = getattr(sink, "emit", sink)
    try:
        result = emit(name, payload)
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        logger.warning("Event sink failed", event_name=name, error=str(exc))
