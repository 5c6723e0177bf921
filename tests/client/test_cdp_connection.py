"""
Tests for the CDP WebSocket client against a scripted aiohttp endpoint
"""
import asyncio

import pytest
import pytest_asyncio
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from tabrelay.cdp import CDPConnection
from tabrelay.errors import (
    CommandExecutionError,
    ConnectionClosedError,
    ConnectionSetupError,
    RequestTimeoutError,
)


async def scripted_cdp(request):
    """Answers a few methods the way a browser would"""
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    async for msg in ws:
        if msg.type != WSMsgType.TEXT:
            continue
        data = msg.json()
        method = data.get("method")
        if method == "Runtime.evaluate":
            await ws.send_json({"id": data["id"], "result": {"result": {"value": data["params"]["expression"]}}})
        elif method == "Page.navigate":
            await ws.send_json({"method": "Page.frameStartedLoading", "params": {}, "sessionId": "s1"})
            await ws.send_json({"id": data["id"], "result": {"frameId": "f1", "loaderId": "l1"}})
            await ws.send_json({"method": "Page.domContentEventFired", "params": {"timestamp": 1}, "sessionId": "s1"})
        elif method == "Broken.method":
            await ws.send_json({"id": data["id"], "error": {"code": -32601, "message": "'Broken.method' wasn't found"}})
        elif method == "Never.answer":
            pass
        elif method == "Close.now":
            await ws.close()
        else:
            await ws.send_json({"id": data["id"], "result": {}})
    return ws


@pytest_asyncio.fixture
async def cdp_server():
    app = web.Application()
    app.router.add_get("/cdp/{client_id}", scripted_cdp)
    server = TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


@pytest_asyncio.fixture
async def connection(cdp_server):
    conn = CDPConnection(f"ws://{cdp_server.host}:{cdp_server.port}/cdp/test", command_timeout=2.0)
    await conn.connect()
    try:
        yield conn
    finally:
        await conn.close()


class TestCommands:

    @pytest.mark.asyncio
    async def test_send_returns_result(self, connection):
        result = await connection.send("Runtime.evaluate", {"expression": "document.title"})

        assert result == {"result": {"value": "document.title"}}

    @pytest.mark.asyncio
    async def test_concurrent_commands_correlated(self, connection):
        results = await asyncio.gather(*(
            connection.send("Runtime.evaluate", {"expression": str(n)}) for n in range(10)
        ))

        assert [r["result"]["value"] for r in results] == [str(n) for n in range(10)]

    @pytest.mark.asyncio
    async def test_error_response_raises(self, connection):
        with pytest.raises(CommandExecutionError) as exc_info:
            await connection.send("Broken.method")

        assert exc_info.value.method == "Broken.method"
        assert "wasn't found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout(self, connection):
        with pytest.raises(RequestTimeoutError):
            await connection.send("Never.answer", timeout=0.1)

    @pytest.mark.asyncio
    async def test_close_fails_pending(self, connection):
        pending = asyncio.create_task(connection.send("Never.answer", timeout=5))
        await asyncio.sleep(0.05)

        await connection.close()

        with pytest.raises(ConnectionClosedError):
            await pending
        assert connection.closed

    @pytest.mark.asyncio
    async def test_remote_close_fails_pending(self, connection):
        closed = []
        connection.on_close(lambda: closed.append(True))

        with pytest.raises(ConnectionClosedError):
            await connection.send("Close.now", timeout=5)

        assert connection.closed
        assert closed == [True]
        with pytest.raises(ConnectionClosedError):
            await connection.send("Runtime.evaluate", {"expression": "1"})

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        conn = CDPConnection("ws://127.0.0.1:1/cdp/none", open_timeout=1.0)

        with pytest.raises(ConnectionSetupError):
            await conn.connect()
        assert conn.closed


class TestEvents:

    @pytest.mark.asyncio
    async def test_expect_event_registered_before_command(self, connection):
        waiter = connection.expect_event("Page.domContentEventFired", "s1")

        result = await connection.send("Page.navigate", {"url": "https://example.com"})
        event = await asyncio.wait_for(waiter, timeout=2)

        assert result["loaderId"] == "l1"
        assert event.session_id == "s1"
        assert event.params == {"timestamp": 1}

    @pytest.mark.asyncio
    async def test_expect_event_filters_session(self, connection):
        other = connection.expect_event("Page.domContentEventFired", "s2")
        any_session = connection.expect_event("Page.domContentEventFired")

        await connection.send("Page.navigate", {"url": "https://example.com"})
        await asyncio.wait_for(any_session, timeout=2)

        assert not other.done()
        other.cancel()

    @pytest.mark.asyncio
    async def test_listeners_and_remover(self, connection):
        seen = []
        only_loading = []
        remove = connection.add_listener(lambda event: seen.append(event.method))
        connection.add_listener(lambda event: only_loading.append(event.method), "Page.frameStartedLoading")

        waiter = connection.expect_event("Page.domContentEventFired")
        await connection.send("Page.navigate", {"url": "https://example.com"})
        await asyncio.wait_for(waiter, timeout=2)

        assert seen == ["Page.frameStartedLoading", "Page.domContentEventFired"]
        assert only_loading == ["Page.frameStartedLoading"]

        remove()
        waiter = connection.expect_event("Page.domContentEventFired")
        await connection.send("Page.navigate", {"url": "https://example.com"})
        await asyncio.wait_for(waiter, timeout=2)
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_dispatch(self, connection):
        def broken(event):
            raise RuntimeError("listener bug")

        connection.add_listener(broken)
        waiter = connection.expect_event("Page.domContentEventFired")

        await connection.send("Page.navigate", {"url": "https://example.com"})

        await asyncio.wait_for(waiter, timeout=2)
        assert not connection.closed
