"""Runtime — owns the backend process, its readiness, the tunnel and the broker.

One instance per application.  Everything mutable lives here so several
runtimes can coexist (e.g. in tests).

Lifecycle::

    start()  -> spawn backend -> probe until ready -> start tunnel (once)
    stop()   -> cancel probing -> stop tunnel -> stop backend
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from sharedrop.capabilities.tunnel.base import TunnelEndpoint
from sharedrop.capabilities.tunnel.cloudflared import CloudflaredTunnel
from sharedrop.config import Config
from sharedrop.core import subprocess_tracker
from sharedrop.core.broker import ShareBroker, ShareRequest, ShareResult
from sharedrop.core.errors import ReadinessTimeout, SpawnError
from sharedrop.core.events import EventBus, ServerErrorEvent
from sharedrop.core.process import ManagedProcess, ProcessSupervisor
from sharedrop.core.readiness import ReadinessProber, ReadinessState

logger = logging.getLogger(__name__)

SERVER_ROLE = "server"


class ShareDropRuntime:
    """Coordinates the backend, readiness probing, tunnel and share broker."""

    def __init__(
        self,
        config: Config,
        event_bus: EventBus | None = None,
        tunnel: CloudflaredTunnel | None = None,
    ) -> None:
        self.config = config
        self.event_bus = event_bus or EventBus()
        self.processes = ProcessSupervisor(self.event_bus, stop_timeout=config.stop_timeout)
        self.readiness = ReadinessState()
        self.tunnel = tunnel or CloudflaredTunnel(
            self.processes, self.event_bus, override_path=config.tunnel_path,
        )
        self.broker = ShareBroker(
            self.readiness,
            config.local_base_url,
            tunnel_url=lambda: self.tunnel.public_url,
            timeout=config.share_timeout,
        )
        self._server: ManagedProcess | None = None
        self._generation = 0
        self._tunnel_requested: set[int] = set()
        self._lifecycle = asyncio.Lock()
        self._background: set[asyncio.Task] = set()
        self._prober_task: asyncio.Task | None = None
        # share id -> folder the share was created for; the browse root
        self._share_folders: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def server(self) -> ManagedProcess | None:
        return self._server

    @property
    def is_server_running(self) -> bool:
        return self._server is not None and self._server.is_alive

    @property
    def is_ready(self) -> bool:
        return self.readiness.ready

    def get_tunnel_url(self) -> str | None:
        return self.tunnel.public_url

    def share_folder(self, share_id: str) -> str | None:
        """Folder recorded for a share created through this runtime."""
        return self._share_folders.get(share_id)

    def tunnel_info(self) -> dict[str, Any]:
        endpoint: TunnelEndpoint = self.tunnel.endpoint
        return {
            "url": endpoint.url,
            "status": endpoint.status.value,
            "executable": endpoint.executable,
            "install_hint": self.tunnel.install_hint,
        }

    def status(self) -> dict[str, Any]:
        server = self._server
        return {
            "server": {
                "running": self.is_server_running,
                "pid": server.pid if server else None,
                "state": server.state.value if server else None,
                "returncode": server.returncode if server else None,
                "local_url": self.config.local_base_url,
            },
            "ready": self.readiness.ready,
            "ready_at": self.readiness.ready_at,
            "tunnel": self.tunnel_info(),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> ManagedProcess:
        """Spawn the backend and begin readiness probing.

        Raises SpawnError if the backend cannot be started.
        """
        async with self._lifecycle:
            return await self._start_server()

    async def stop(self) -> None:
        """Stop probing, the tunnel and the backend.  No children survive."""
        async with self._lifecycle:
            await self._stop_server()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def restart(self) -> ManagedProcess:
        """Stop everything and start a fresh backend (caller-decided retry)."""
        async with self._lifecycle:
            await self._stop_server()
            return await self._start_server()

    async def __aenter__(self) -> ShareDropRuntime:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Upward API
    # ------------------------------------------------------------------

    async def create_share(
        self,
        folder_path: str,
        session_name: str | None = None,
        expires_in_mins: int | None = None,
    ) -> ShareResult:
        """Raises NotReadyError or UpstreamError."""
        result = await self.broker.create_share(ShareRequest(
            folder_path=folder_path,
            session_name=session_name,
            expires_in_mins=expires_in_mins,
        ))
        self._share_folders[result.id] = folder_path
        return result

    # ------------------------------------------------------------------
    # Internals (callers hold self._lifecycle)
    # ------------------------------------------------------------------

    async def _start_server(self) -> ManagedProcess:
        if self.is_server_running:
            raise SpawnError(SERVER_ROLE, self.config.server_path, "already running")

        self.config.data_dir.mkdir(parents=True, exist_ok=True)
        self.readiness.reset()
        try:
            managed = await self.processes.start(
                SERVER_ROLE,
                self.config.server_path,
                cwd=self.config.data_dir,
                env={"PORT": str(self.config.server_port)},
            )
        except SpawnError as e:
            logger.error("%s", e)
            self.event_bus.publish(ServerErrorEvent(message=str(e)))
            raise

        self._generation += 1
        self._server = managed
        generation = self._generation

        prober = ReadinessProber(
            f"{self.config.local_base_url}/",
            self.readiness,
            event_bus=self.event_bus,
            interval=self.config.probe_interval,
            grace=self.config.probe_grace,
            probe_timeout=self.config.probe_timeout,
            deadline=self.config.readiness_timeout,
            on_ready=lambda: self._on_ready(generation),
        )
        self._prober_task = self._spawn(self._run_prober(prober, managed))
        self._spawn(self._watch_server(managed))
        return managed

    async def _stop_server(self) -> None:
        if self._prober_task:
            self._prober_task.cancel()
            self._prober_task = None
        await self.tunnel.stop()
        if self._server:
            await self.processes.stop(self._server)
        self.readiness.reset()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _run_prober(self, prober: ReadinessProber, managed: ManagedProcess) -> None:
        try:
            await prober.run()
        except ReadinessTimeout as e:
            logger.error("%s, stopping server", e)
            self.event_bus.publish(ServerErrorEvent(message=str(e)))
            async with self._lifecycle:
                if self._prober_task is asyncio.current_task():
                    self._prober_task = None
                if self._server is managed:
                    await self._stop_server()

    def _on_ready(self, generation: int) -> None:
        # One tunnel start per server process, however often readiness fires
        if generation in self._tunnel_requested or self.config.tunnel_disabled:
            return
        self._tunnel_requested.add(generation)
        self._spawn(self._start_tunnel(generation))

    async def _start_tunnel(self, generation: int) -> None:
        async with self._lifecycle:
            if generation != self._generation or not self.is_server_running:
                logger.debug("Server replaced before tunnel start, skipping")
                return
            await self.tunnel.start(self.config.local_base_url)

    async def _watch_server(self, managed: ManagedProcess) -> None:
        returncode = await managed.wait()
        if managed.stop_requested:
            return
        async with self._lifecycle:
            if self._server is not managed:
                return
            logger.error("Server exited unexpectedly with code %s", returncode)
            if self._prober_task:
                self._prober_task.cancel()
                self._prober_task = None
            self.readiness.reset()
            await self.tunnel.stop()
            self.event_bus.publish(ServerErrorEvent(
                message=f"Server exited unexpectedly (code {returncode})",
            ))


def reap_orphans(config: Config) -> int:
    """Kill children left behind by a crashed previous run."""
    subprocess_tracker.set_pid_file(config.pid_file)
    return subprocess_tracker.reap_orphans()
