"""Event Bus and typed event definitions for the sharedrop runtime.

Process supervision, readiness and tunnel discovery report progress as
events.  Control planes subscribe and render.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventBus:
    """Simple in-process asyncio pub/sub event bus.

    Publishers call publish(event). Subscribers receive events via
    subscribe() which returns an asyncio.Queue, or iter_events() for
    convenient async iteration.
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[asyncio.Queue]] = {}

    def subscribe(self, event_type: type[T]) -> asyncio.Queue[T]:
        """Subscribe to events of a specific type. Returns a Queue."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(event_type, []).append(queue)
        return queue

    def unsubscribe(self, event_type: type[T], queue: asyncio.Queue) -> None:
        """Remove a subscription."""
        queues = self._subscribers.get(event_type, [])
        if queue in queues:
            queues.remove(queue)

    def subscribe_all(self, event_types: list[type]) -> asyncio.Queue:
        """Subscribe one shared Queue to several event types.

        Events arrive in publish order across all types.
        """
        queue: asyncio.Queue = asyncio.Queue()
        for event_type in event_types:
            self._subscribers.setdefault(event_type, []).append(queue)
        return queue

    def unsubscribe_all(self, event_types: list[type], queue: asyncio.Queue) -> None:
        for event_type in event_types:
            self.unsubscribe(event_type, queue)

    def publish(self, event: object) -> None:
        """Publish an event to all subscribers of its type."""
        for queue in self._subscribers.get(type(event), []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full, dropping %s", type(event).__name__)

    async def iter_events(self, event_type: type[T]) -> AsyncIterator[T]:
        """Async iterator for events of a specific type."""
        queue = self.subscribe(event_type)
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(event_type, queue)


# ---------------------------------------------------------------------------
# Event level
# ---------------------------------------------------------------------------

class EventLevel(Enum):
    """How prominently a control plane should surface an event."""
    INTERNAL = "internal"   # Bookkeeping (process exits we asked for)
    INFO = "info"           # Status changes
    NOTIFY = "notify"       # Something the user should see
    ERROR = "error"         # Feature-level failure, backend keeps running


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProcessExitedEvent:
    """A supervised child process exited (for any reason)."""
    role: str
    pid: int | None
    returncode: int | None
    expected: bool  # True when stop() caused the exit
    level: EventLevel = EventLevel.INTERNAL


@dataclass(frozen=True)
class ServerReadyEvent:
    """Backend answered its first probe.  Fired once per server process."""
    url: str
    ready_at: float
    level: EventLevel = EventLevel.INFO


@dataclass(frozen=True)
class ServerErrorEvent:
    """Backend could not be started, never became ready, or died."""
    message: str
    level: EventLevel = EventLevel.ERROR


@dataclass(frozen=True)
class TunnelUnavailableEvent:
    """No tunnel executable on this host.  Sharing stays local-only."""
    install_hint: str
    level: EventLevel = EventLevel.NOTIFY


@dataclass(frozen=True)
class TunnelReadyEvent:
    """Tunnel published its public URL."""
    url: str
    level: EventLevel = EventLevel.NOTIFY


@dataclass(frozen=True)
class TunnelErrorEvent:
    """Tunnel failed before publishing a URL.

    kind is one of ``spawn_failed``, ``exited`` (clean exit, no URL) or
    ``crashed`` (non-zero exit, no URL).
    """
    kind: str
    message: str
    returncode: int | None = None
    level: EventLevel = EventLevel.ERROR


# All event types the runtime publishes, in rough lifecycle order.
ALL_EVENT_TYPES: list[type] = [
    ProcessExitedEvent,
    ServerReadyEvent,
    ServerErrorEvent,
    TunnelUnavailableEvent,
    TunnelReadyEvent,
    TunnelErrorEvent,
]
