from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from aiohttp import test_utils

from sharedrop.adapters.web.server import _serialize_event, build_app
from sharedrop.config import Config
from sharedrop.core.events import TunnelErrorEvent, TunnelReadyEvent
from sharedrop.core.runtime import ShareDropRuntime


@pytest.fixture
def log_file(tmp_path: Path) -> Path:
    path = tmp_path / "sharedrop.log"
    path.write_text("".join(f"line {i}\n" for i in range(10)))
    return path


@pytest.fixture
async def runtime(stub_backend, server_script: Path, data_dir: Path):
    config = Config(
        server_path=str(server_script),
        data_dir=data_dir,
        server_port=stub_backend.port,
        tunnel_disabled=True,
    )
    rt = ShareDropRuntime(config)
    yield rt
    await rt.stop()


@pytest.fixture
async def client(runtime: ShareDropRuntime, log_file: Path):
    async with test_utils.TestClient(test_utils.TestServer(build_app(runtime, str(log_file)))) as c:
        yield c


@pytest.fixture
def shared(tmp_path: Path) -> Path:
    root = tmp_path / "shared"
    (root / "album").mkdir(parents=True)
    (root / "cover.png").write_bytes(b"png")
    return root


class TestCreateShare:
    async def test_not_ready_is_503(self, client, stub_backend):
        resp = await client.post("/api/share", json={"folder_path": "/photos"})
        assert resp.status == 503
        data = await resp.json()
        assert data["retryable"] is True
        assert stub_backend.share_requests == []

    async def test_success(self, client, runtime, stub_backend):
        runtime.readiness.mark_ready()
        resp = await client.post("/api/share", json={
            "folder_path": "/photos", "session_name": "Trip", "expires_in_mins": 60,
        })
        assert resp.status == 200
        data = await resp.json()
        assert data["id"] == "42"
        assert data["public_url"] == f"http://localhost:{stub_backend.port}/share/42"
        assert stub_backend.share_requests == [
            {"folder_path": "/photos", "session_name": "Trip", "expires_in_mins": 60},
        ]

    async def test_upstream_failure_is_502(self, client, runtime, stub_backend):
        runtime.readiness.mark_ready()
        stub_backend.status = 500
        stub_backend.body = "boom"
        resp = await client.post("/api/share", json={"folder_path": "/photos"})
        assert resp.status == 502
        data = await resp.json()
        assert data["status"] == 500
        assert data["detail"] == "boom"

    @pytest.mark.parametrize("body", [
        {},
        {"folder_path": "  "},
        {"folder_path": "/photos", "expires_in_mins": "soon"},
        {"folder_path": "/photos", "expires_in_mins": True},
        ["/photos"],
    ])
    async def test_bad_input_is_400(self, client, body):
        resp = await client.post("/api/share", json=body)
        assert resp.status == 400

    async def test_invalid_json_is_400(self, client):
        resp = await client.post("/api/share", data="not json")
        assert resp.status == 400


class TestQueries:
    async def test_tunnel(self, client):
        resp = await client.get("/api/tunnel")
        assert resp.status == 200
        data = await resp.json()
        assert data["url"] is None
        assert data["status"] == "unknown"
        assert data["install_hint"]

    async def test_status(self, client, runtime):
        resp = await client.get("/api/status")
        data = await resp.json()
        assert data["ready"] is False
        assert data["server"]["running"] is False
        assert data["server"]["local_url"] == runtime.config.local_base_url

    async def test_logs_tail(self, client):
        resp = await client.get("/api/logs", params={"lines": "3"})
        data = await resp.json()
        assert data["lines"] == ["line 7", "line 8", "line 9"]

    async def test_logs_missing_file(self, runtime, tmp_path: Path):
        app = build_app(runtime, str(tmp_path / "absent.log"))
        async with test_utils.TestClient(test_utils.TestServer(app)) as c:
            resp = await c.get("/api/logs")
            assert (await resp.json()) == {"lines": []}


class TestBrowse:
    @pytest.fixture
    async def share_id(self, client, runtime, shared: Path) -> str:
        runtime.readiness.mark_ready()
        resp = await client.post("/api/share", json={"folder_path": str(shared)})
        assert resp.status == 200
        return (await resp.json())["id"]

    async def test_lists_share_root(self, client, share_id):
        resp = await client.get("/api/browse", params={"share": share_id})
        assert resp.status == 200
        data = await resp.json()
        assert [e["name"] for e in data["entries"]] == ["album", "cover.png"]
        assert data["entries"][1]["is_image"] is True

    async def test_subfolder(self, client, share_id):
        resp = await client.get("/api/browse", params={"share": share_id, "path": "album"})
        assert resp.status == 200
        assert (await resp.json())["entries"] == []

    async def test_missing_share_param(self, client):
        resp = await client.get("/api/browse")
        assert resp.status == 400

    async def test_caller_supplied_root_is_refused(self, client):
        resp = await client.get("/api/browse", params={"root": "/", "path": "etc"})
        assert resp.status == 400
        assert "entries" not in await resp.json()

    async def test_unknown_share_is_404(self, client, share_id):
        resp = await client.get("/api/browse", params={"share": "nope", "path": "etc"})
        assert resp.status == 404

    @pytest.mark.parametrize("path", ["..", "../../etc", "/etc"])
    async def test_escape_is_403(self, client, share_id, path):
        resp = await client.get("/api/browse", params={"share": share_id, "path": path})
        assert resp.status == 403

    async def test_missing_folder_is_404(self, client, share_id):
        resp = await client.get("/api/browse", params={"share": share_id, "path": "nope"})
        assert resp.status == 404

    async def test_file_is_404(self, client, share_id):
        resp = await client.get("/api/browse", params={"share": share_id, "path": "cover.png"})
        assert resp.status == 404


class TestRestart:
    async def test_spawn_error_is_500(self, client, runtime, tmp_path: Path):
        runtime.config.server_path = str(tmp_path / "missing")
        resp = await client.post("/api/server/restart")
        assert resp.status == 500
        assert "missing" in (await resp.json())["error"]


class TestEvents:
    def test_serialize_event(self):
        data = _serialize_event(TunnelErrorEvent(kind="crashed", message="boom", returncode=1))
        assert data == {
            "type": "TunnelErrorEvent",
            "kind": "crashed",
            "message": "boom",
            "returncode": 1,
            "level": "error",
        }

    async def test_sse_stream(self, client, runtime):
        resp = await client.get("/api/events")
        assert resp.headers["Content-Type"] == "text/event-stream"
        await asyncio.sleep(0.05)

        runtime.event_bus.publish(TunnelReadyEvent(url="https://a.trycloudflare.com"))
        line = await asyncio.wait_for(resp.content.readline(), 5)

        assert line.startswith(b"data: ")
        payload = json.loads(line[len(b"data: "):])
        assert payload["type"] == "TunnelReadyEvent"
        assert payload["url"] == "https://a.trycloudflare.com"
        resp.close()
