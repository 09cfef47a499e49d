from __future__ import annotations

import socket
import sys
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import pytest
from aiohttp import web

from sharedrop.core import subprocess_tracker


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Provide an isolated data directory for the backend."""
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture(autouse=True)
def _isolated_pid_tracking(monkeypatch):
    """Keep the process-wide PID registry from leaking between tests."""
    monkeypatch.setattr(subprocess_tracker, "_children", {})
    monkeypatch.setattr(subprocess_tracker, "_pid_file", None)


@pytest.fixture
def free_port() -> int:
    """Ask the OS for an available TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def make_executable(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write a small Python program to tmp_path and mark it executable."""

    def _make(name: str, body: str) -> Path:
        path = tmp_path / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        path.chmod(0o755)
        return path

    return _make


@pytest.fixture
async def serve_app():
    """Start aiohttp apps on 127.0.0.1; all are cleaned up after the test."""
    runners: list[web.AppRunner] = []

    async def _serve(app: web.Application, port: int) -> None:
        runner = web.AppRunner(app)
        await runner.setup()
        await web.TCPSite(runner, "127.0.0.1", port).start()
        runners.append(runner)

    yield _serve

    for runner in runners:
        await runner.cleanup()


@dataclass
class StubBackend:
    """In-process stand-in for the share server."""

    port: int
    status: int = 200
    body: object = field(default_factory=lambda: {"id": "42"})
    share_requests: list = field(default_factory=list)
    root_hits: int = 0

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"


@pytest.fixture
async def stub_backend(serve_app, free_port) -> StubBackend:
    backend = StubBackend(port=free_port)

    async def _root(request: web.Request) -> web.Response:
        backend.root_hits += 1
        return web.Response(text="ok")

    async def _shares(request: web.Request) -> web.Response:
        backend.share_requests.append(await request.json())
        if isinstance(backend.body, str):
            return web.Response(status=backend.status, text=backend.body)
        return web.json_response(backend.body, status=backend.status)

    app = web.Application()
    app.router.add_get("/", _root)
    app.router.add_post("/api/shares", _shares)
    await serve_app(app, backend.port)
    return backend


# Prints its argv, then announces a quick-tunnel URL on stderr split
# mid-hostname across two flushes, then idles until killed.
TUNNEL_SCRIPT = """\
import sys
import time

print(" ".join(sys.argv[1:]), flush=True)
sys.stderr.write("INF Requesting new quick Tunnel on trycloudflare.com...\\n")
sys.stderr.write("found url https://abcd-1234.trycloud")
sys.stderr.flush()
time.sleep(0.3)
sys.stderr.write("flare.com for you\\n")
sys.stderr.flush()
time.sleep(60)
"""

# Minimal share backend: waits STUB_DELAY seconds, then serves on $PORT.
SERVER_SCRIPT = """\
import json
import os
import time
from http.server import BaseHTTPRequestHandler, HTTPServer

time.sleep(float(os.environ.get("STUB_DELAY", "0")))


class Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        self.send_response(200)
        self.end_headers()
        self.wfile.write(b"ok")

    def do_POST(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = json.loads(self.rfile.read(length) or b"{}")
        payload = json.dumps({"id": "42", "folder_path": body.get("folder_path")}).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, *args):
        pass


print("listening", flush=True)
HTTPServer(("127.0.0.1", int(os.environ["PORT"])), Handler).serve_forever()
"""


@pytest.fixture
def tunnel_script(make_executable) -> Path:
    return make_executable("fake-cloudflared", TUNNEL_SCRIPT)


@pytest.fixture
def server_script(make_executable) -> Path:
    return make_executable("fake-server", SERVER_SCRIPT)
