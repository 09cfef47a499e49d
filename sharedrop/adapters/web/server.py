"""Local control plane — REST API + SSE for the desktop shell.

Replaces the desktop IPC bridge: "create share", "get tunnel URL", status,
folder browsing and a live event stream, all bound to 127.0.0.1.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from enum import Enum
from pathlib import Path

from aiohttp import web

from sharedrop.core.browse import list_folder
from sharedrop.core.errors import NotReadyError, SpawnError, UpstreamError
from sharedrop.core.events import ALL_EVENT_TYPES, EventBus
from sharedrop.core.runtime import ShareDropRuntime

logger = logging.getLogger(__name__)

RUNTIME_KEY = web.AppKey("runtime", ShareDropRuntime)
LOG_FILE_KEY = web.AppKey("log_file", str)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _serialize_event(ev: object) -> dict:
    """Convert a typed event to a JSON-serializable dict for SSE."""
    data = {"type": type(ev).__name__}
    for key, value in asdict(ev).items():
        data[key] = value.value if isinstance(value, Enum) else value
    return data


def _runtime(request: web.Request) -> ShareDropRuntime:
    return request.app[RUNTIME_KEY]


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

async def _handle_create_share(request: web.Request) -> web.Response:
    """POST /api/share — create a share for a folder."""
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return web.json_response({"error": "invalid JSON body"}, status=400)
    if not isinstance(body, dict):
        return web.json_response({"error": "invalid JSON body"}, status=400)

    folder_path = str(body.get("folder_path", "")).strip()
    if not folder_path:
        return web.json_response({"error": "folder_path is required"}, status=400)
    expires = body.get("expires_in_mins")
    if expires is not None and (isinstance(expires, bool) or not isinstance(expires, int)):
        return web.json_response({"error": "expires_in_mins must be an integer"}, status=400)

    try:
        result = await _runtime(request).create_share(
            folder_path,
            session_name=body.get("session_name") or None,
            expires_in_mins=expires,
        )
    except NotReadyError as e:
        return web.json_response({"error": str(e), "retryable": True}, status=503)
    except UpstreamError as e:
        return web.json_response(
            {"error": "backend rejected the share", "status": e.status, "detail": e.body},
            status=502,
        )
    return web.json_response(result.to_dict())


async def _handle_tunnel(request: web.Request) -> web.Response:
    """GET /api/tunnel — current public URL (or null) and tunnel status."""
    return web.json_response(_runtime(request).tunnel_info())


async def _handle_status(request: web.Request) -> web.Response:
    """GET /api/status"""
    return web.json_response(_runtime(request).status())


async def _handle_restart(request: web.Request) -> web.Response:
    """POST /api/server/restart"""
    try:
        managed = await _runtime(request).restart()
    except SpawnError as e:
        return web.json_response({"error": str(e)}, status=500)
    return web.json_response({"ok": True, "pid": managed.pid})


async def _handle_browse(request: web.Request) -> web.Response:
    """GET /api/browse?share=<id>&path=... — list a folder inside a share.

    The root is the folder recorded when the share was created, never a
    caller-supplied path.
    """
    share_id = request.query.get("share", "").strip()
    if not share_id:
        return web.json_response({"error": "share is required"}, status=400)
    root = _runtime(request).share_folder(share_id)
    if root is None:
        return web.json_response({"error": "share not found"}, status=404)
    requested = request.query.get("path", "")

    try:
        entries = list_folder(root, requested)
    except (FileNotFoundError, NotADirectoryError):
        return web.json_response({"error": "folder not found"}, status=404)
    except PermissionError:
        return web.json_response({"error": "access denied"}, status=403)
    if entries is None:
        return web.json_response({"error": "access denied"}, status=403)
    return web.json_response({
        "path": requested,
        "entries": [e.to_dict() for e in entries],
    })


# -- SSE --------------------------------------------------------------------

async def _handle_sse(request: web.Request) -> web.StreamResponse:
    """GET /api/events — Server-Sent Events stream of runtime events."""
    event_bus: EventBus = _runtime(request).event_bus

    response = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
    await response.prepare(request)

    queue = event_bus.subscribe_all(ALL_EVENT_TYPES)
    try:
        while True:
            ev = await queue.get()
            data = _serialize_event(ev)
            payload = f"data: {json.dumps(data, ensure_ascii=False)}\n\n"
            await response.write(payload.encode("utf-8"))
    except (asyncio.CancelledError, ConnectionResetError):
        pass
    finally:
        event_bus.unsubscribe_all(ALL_EVENT_TYPES, queue)

    return response


# -- Logs -------------------------------------------------------------------

async def _handle_logs(request: web.Request) -> web.Response:
    """GET /api/logs — tail of the log file."""
    try:
        lines_count = int(request.query.get("lines", "200"))
    except (ValueError, TypeError):
        lines_count = 200
    lines_count = max(1, min(lines_count, 1000))
    path = Path(request.app[LOG_FILE_KEY])
    if not path.exists():
        return web.json_response({"lines": []})
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("Failed to read log file: %s", e)
        return web.json_response({"lines": ["Error reading log file"]})
    return web.json_response({"lines": text.splitlines()[-lines_count:]})


# ---------------------------------------------------------------------------
# App factory & server class
# ---------------------------------------------------------------------------

def build_app(runtime: ShareDropRuntime, log_file: str) -> web.Application:
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app[LOG_FILE_KEY] = log_file

    app.router.add_post("/api/share", _handle_create_share)
    app.router.add_get("/api/tunnel", _handle_tunnel)
    app.router.add_get("/api/status", _handle_status)
    app.router.add_post("/api/server/restart", _handle_restart)
    app.router.add_get("/api/browse", _handle_browse)

    app.router.add_get("/api/events", _handle_sse)
    app.router.add_get("/api/logs", _handle_logs)

    return app


class WebControlPlane:
    """aiohttp-based local control plane server."""

    def __init__(
        self,
        runtime: ShareDropRuntime,
        log_file: str,
        port: int = 7777,
    ) -> None:
        self._app = build_app(runtime, log_file)
        self._port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "127.0.0.1", self._port)
        await site.start()
        logger.info("Control plane running at http://localhost:%d", self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Control plane stopped")
