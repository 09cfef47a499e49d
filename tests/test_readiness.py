from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from aiohttp import web

from sharedrop.core.errors import ReadinessTimeout
from sharedrop.core.events import EventBus, ServerReadyEvent
from sharedrop.core.readiness import ReadinessProber, ReadinessState


def _app(status: int = 200) -> web.Application:
    async def _root(request: web.Request) -> web.Response:
        return web.Response(status=status, text="hello")

    app = web.Application()
    app.router.add_get("/", _root)
    return app


class TestReadinessState:
    def test_mark_ready_once(self):
        state = ReadinessState()
        assert state.mark_ready() is True
        first = state.ready_at
        assert state.mark_ready() is False
        assert state.ready_at == first

    def test_reset(self):
        state = ReadinessState()
        state.mark_ready()
        state.reset()
        assert not state.ready
        assert state.ready_at is None
        assert state.mark_ready() is True


class TestReadinessProber:
    async def test_ready_when_server_answers(self, serve_app, free_port):
        await serve_app(_app(), free_port)
        bus = EventBus()
        queue = bus.subscribe(ServerReadyEvent)
        state = ReadinessState()
        on_ready = MagicMock()
        url = f"http://127.0.0.1:{free_port}/"

        prober = ReadinessProber(
            url, state, event_bus=bus, interval=0.05, grace=0, on_ready=on_ready,
        )
        assert await prober.run() is True

        assert state.ready
        on_ready.assert_called_once_with()
        ev = queue.get_nowait()
        assert ev.url == url
        assert ev.ready_at == state.ready_at

    async def test_any_status_counts_as_ready(self, serve_app, free_port):
        await serve_app(_app(status=500), free_port)
        state = ReadinessState()
        prober = ReadinessProber(
            f"http://127.0.0.1:{free_port}/", state, interval=0.05, grace=0,
        )
        assert await prober.run() is True
        assert prober.attempts == 1

    async def test_not_ready_before_server_listens(self, serve_app, free_port):
        state = ReadinessState()
        prober = ReadinessProber(
            f"http://127.0.0.1:{free_port}/", state, interval=0.1, grace=0.1,
        )
        loop = asyncio.get_running_loop()
        started = loop.time()
        task = asyncio.create_task(prober.run())

        await asyncio.sleep(1.0)
        assert not state.ready
        assert not task.done()
        assert prober.attempts >= 2

        await asyncio.sleep(0.2)
        await serve_app(_app(), free_port)
        await asyncio.wait_for(task, 5)

        assert state.ready
        assert loop.time() - started >= 1.2

    async def test_second_run_does_not_refire(self, serve_app, free_port):
        await serve_app(_app(), free_port)
        bus = EventBus()
        queue = bus.subscribe(ServerReadyEvent)
        state = ReadinessState()
        on_ready = MagicMock()
        url = f"http://127.0.0.1:{free_port}/"

        for _ in range(2):
            prober = ReadinessProber(
                url, state, event_bus=bus, interval=0.05, grace=0, on_ready=on_ready,
            )
            await prober.run()

        assert on_ready.call_count == 1
        assert queue.qsize() == 1

    async def test_deadline(self, free_port):
        state = ReadinessState()
        prober = ReadinessProber(
            f"http://127.0.0.1:{free_port}/", state,
            interval=0.05, grace=0, probe_timeout=0.2, deadline=0.3,
        )
        with pytest.raises(ReadinessTimeout):
            await prober.run()
        assert not state.ready

    async def test_cancellation(self, free_port):
        state = ReadinessState()
        prober = ReadinessProber(f"http://127.0.0.1:{free_port}/", state, interval=0.05, grace=0)
        task = asyncio.create_task(prober.run())
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not state.ready
