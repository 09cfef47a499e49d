"""Cloudflared quick tunnel — expose the local backend under a public URL."""
from __future__ import annotations

import asyncio
import logging
import sys
from typing import Sequence

from sharedrop.capabilities.tunnel.base import (
    TunnelEndpoint,
    TunnelStatus,
    TunnelUrlScraper,
)
from sharedrop.capabilities.tunnel.discovery import (
    candidate_paths,
    find_tunnel_executable,
    install_hint,
)
from sharedrop.core.errors import SpawnError
from sharedrop.core.events import (
    EventBus,
    TunnelErrorEvent,
    TunnelReadyEvent,
    TunnelUnavailableEvent,
)
from sharedrop.core.process import ManagedProcess, ProcessSupervisor

logger = logging.getLogger(__name__)

ROLE = "tunnel"


class CloudflaredTunnel:
    """Discovers, spawns and watches one cloudflared process at a time.

    Every failure here is reported as an event; the backend keeps running
    locally whatever happens to the tunnel.
    """

    def __init__(
        self,
        processes: ProcessSupervisor,
        event_bus: EventBus,
        *,
        override_path: str | None = None,
        candidates: Sequence[str] | None = None,
        platform: str = sys.platform,
    ) -> None:
        self._processes = processes
        self._event_bus = event_bus
        self._candidates = (
            list(candidates) if candidates is not None
            else candidate_paths(platform, override_path)
        )
        self._platform = platform
        self._endpoint = TunnelEndpoint()
        self._process: ManagedProcess | None = None
        self._watch_task: asyncio.Task | None = None
        self._url_found = asyncio.Event()
        self._generation = 0

    @property
    def endpoint(self) -> TunnelEndpoint:
        return self._endpoint

    @property
    def public_url(self) -> str | None:
        return self._endpoint.url

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive

    @property
    def tunnel_type(self) -> str:
        return "cloudflared"

    @property
    def install_hint(self) -> str:
        return install_hint(self._platform)

    async def start(self, target_url: str) -> TunnelEndpoint:
        """Spawn ``cloudflared tunnel --url <target_url>``.

        Returns as soon as the process is running; the public URL shows up
        later as a TunnelReadyEvent (or via ``wait_for_url``).
        """
        if self.is_alive:
            return self._endpoint

        executable = find_tunnel_executable(self._candidates)
        if not executable:
            logger.warning("cloudflared not found, sharing stays local-only")
            self._endpoint = TunnelEndpoint(status=TunnelStatus.UNAVAILABLE)
            self._event_bus.publish(TunnelUnavailableEvent(install_hint=self.install_hint))
            return self._endpoint

        scraper = TunnelUrlScraper()
        self._generation += 1
        generation = self._generation
        self._url_found = asyncio.Event()
        self._endpoint = TunnelEndpoint(executable=executable, status=TunnelStatus.STARTING)
        try:
            managed = await self._processes.start(
                ROLE,
                executable,
                ["tunnel", "--url", target_url],
                on_output=lambda stream, text: self._scan(generation, scraper, stream, text),
            )
        except SpawnError as e:
            logger.warning("Tunnel spawn failed: %s", e)
            self._endpoint = self._endpoint.evolve(status=TunnelStatus.FAILED)
            self._event_bus.publish(TunnelErrorEvent(kind="spawn_failed", message=str(e)))
            return self._endpoint

        self._process = managed
        self._watch_task = asyncio.create_task(self._watch(managed, scraper))
        return self._endpoint

    async def wait_for_url(self, timeout: float | None = None) -> str | None:
        """Wait until a URL is published.  Returns None on timeout."""
        try:
            await asyncio.wait_for(self._url_found.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self._endpoint.url

    async def stop(self) -> None:
        """Stop cloudflared and withdraw the public URL."""
        managed = self._process
        if managed:
            await self._processes.stop(managed)
        if self._watch_task:
            await self._watch_task
            self._watch_task = None

    # ------------------------------------------------------------------

    def _scan(
        self, generation: int, scraper: TunnelUrlScraper, stream: str, text: str,
    ) -> None:
        url = scraper.feed(text, stream)
        if not url:
            return
        # Output from an instance we have since replaced must not leak through
        if generation != self._generation:
            return
        logger.info("Tunnel URL: %s", url)
        self._endpoint = self._endpoint.evolve(url=url, status=TunnelStatus.ACTIVE)
        self._url_found.set()
        self._event_bus.publish(TunnelReadyEvent(url=url))

    async def _watch(self, managed: ManagedProcess, scraper: TunnelUrlScraper) -> None:
        returncode = await managed.wait()
        if self._process is not managed:
            return
        self._process = None

        if managed.stop_requested:
            self._endpoint = self._endpoint.evolve(url=None, status=TunnelStatus.STOPPED)
            return

        self._endpoint = self._endpoint.evolve(url=None, status=TunnelStatus.FAILED)
        if scraper.url:
            logger.warning("Tunnel exited with code %s, public URL withdrawn", returncode)
            return

        if returncode == 0:
            kind, message = "exited", "Tunnel exited without publishing a URL"
        else:
            kind, message = "crashed", f"Tunnel failed to start (exit code {returncode})"
        logger.warning("%s", message)
        self._event_bus.publish(TunnelErrorEvent(
            kind=kind, message=message, returncode=returncode,
        ))
