"""Backend readiness — poll the server's root URL until it answers."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

import aiohttp

from sharedrop.core.errors import ReadinessTimeout
from sharedrop.core.events import EventBus, ServerReadyEvent

logger = logging.getLogger(__name__)


@dataclass
class ReadinessState:
    """Ready flag for the current server process.

    Written by the prober (``mark_ready``) and the runtime (``reset`` on
    server exit); read by everyone else.
    """

    ready: bool = False
    ready_at: float | None = None

    def mark_ready(self) -> bool:
        """Flip to ready.  Returns False if it already was."""
        if self.ready:
            return False
        self.ready = True
        self.ready_at = time.time()
        return True

    def reset(self) -> None:
        self.ready = False
        self.ready_at = None


class ReadinessProber:
    """Polls ``GET <url>`` until any HTTP response comes back.

    Polling has no attempt cap unless *deadline* is given: whoever owns the
    server process decides when to give up, by killing it and cancelling
    ``run()``.
    """

    def __init__(
        self,
        url: str,
        state: ReadinessState,
        *,
        event_bus: EventBus | None = None,
        interval: float = 0.5,
        grace: float = 0.5,
        probe_timeout: float = 2.0,
        deadline: float | None = None,
        on_ready: Callable[[], None] | None = None,
    ) -> None:
        self.url = url
        self._state = state
        self._event_bus = event_bus
        self._interval = interval
        self._grace = grace
        self._probe_timeout = probe_timeout
        self._deadline = deadline
        self._on_ready = on_ready
        self.attempts = 0

    async def run(self) -> bool:
        """Poll until the server answers.

        Returns True if this call flipped the state to ready, False if it was
        already ready.  Raises ReadinessTimeout only when a deadline is set.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        await asyncio.sleep(self._grace)

        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._probe_timeout),
        ) as session:
            while not await self._probe(session):
                if self._deadline is not None and loop.time() - started >= self._deadline:
                    raise ReadinessTimeout(self.url, self._deadline)
                await asyncio.sleep(self._interval)

        return self._announce()

    async def _probe(self, session: aiohttp.ClientSession) -> bool:
        self.attempts += 1
        try:
            async with session.get(self.url) as resp:
                # Any HTTP response means the server is serving
                logger.debug("Probe %d: %s -> %d", self.attempts, self.url, resp.status)
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.debug("Probe %d: %s not ready (%s)", self.attempts, self.url, e)
            return False

    def _announce(self) -> bool:
        if not self._state.mark_ready():
            logger.debug("Server at %s already marked ready", self.url)
            return False

        logger.info("Server ready at %s after %d probe(s)", self.url, self.attempts)
        if self._event_bus:
            self._event_bus.publish(ServerReadyEvent(
                url=self.url, ready_at=self._state.ready_at or time.time(),
            ))
        if self._on_ready:
            self._on_ready()
        return True
