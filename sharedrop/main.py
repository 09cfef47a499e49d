from __future__ import annotations

import asyncio
import logging
import signal

from sharedrop.adapters.web.server import WebControlPlane
from sharedrop.config import Config
from sharedrop.core.errors import SpawnError
from sharedrop.core.events import (
    EventBus,
    ServerErrorEvent,
    TunnelErrorEvent,
    TunnelReadyEvent,
    TunnelUnavailableEvent,
)
from sharedrop.core.runtime import ShareDropRuntime, reap_orphans

logger = logging.getLogger("sharedrop")

_STATUS_EVENT_TYPES: list[type] = [
    ServerErrorEvent,
    TunnelErrorEvent,
    TunnelReadyEvent,
    TunnelUnavailableEvent,
]


def setup_logging(config: Config) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(config.log_file),
        ],
    )


async def _report_status(event_bus: EventBus) -> None:
    """Echo user-facing status changes to the log."""
    queue = event_bus.subscribe_all(_STATUS_EVENT_TYPES)
    try:
        while True:
            ev = await queue.get()
            if isinstance(ev, TunnelReadyEvent):
                logger.info("Tunnel active: %s", ev.url)
            elif isinstance(ev, TunnelUnavailableEvent):
                logger.info("Tunnel unavailable. Install with: %s", ev.install_hint)
            else:
                logger.warning("%s", ev.message)
    finally:
        event_bus.unsubscribe_all(_STATUS_EVENT_TYPES, queue)


async def main() -> None:
    config = Config.from_env()
    setup_logging(config)
    logger.info("ShareDrop starting...")

    config.data_dir.mkdir(parents=True, exist_ok=True)
    reap_orphans(config)

    event_bus = EventBus()
    runtime = ShareDropRuntime(config, event_bus=event_bus)
    control_plane = WebControlPlane(runtime, config.log_file, port=config.control_port)
    reporter = asyncio.create_task(_report_status(event_bus))

    # Handle shutdown signals
    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await control_plane.start()
    try:
        await runtime.start()
    except SpawnError:
        # Already reported; keep the control plane up so the UI can retry
        logger.error("Backend not started, use POST /api/server/restart to retry")
    logger.info("ShareDrop is running. Press Ctrl+C to stop.")

    await stop_event.wait()

    logger.info("Shutting down...")
    await runtime.stop()
    await control_plane.stop()
    reporter.cancel()
    logger.info("ShareDrop stopped.")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
