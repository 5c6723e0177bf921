"""
Tests for the relay server: routing, correlation, session bookkeeping, auth
"""
import asyncio
from unittest.mock import patch

import pytest
import pytest_asyncio
from aiohttp import WSCloseCode, WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from tabrelay.relay.server import RelayServer


@pytest_asyncio.fixture
async def relay(relay_config):
    """RelayServer behind an aiohttp test client"""
    server = RelayServer(relay_config)
    client = TestClient(TestServer(server.create_app()))
    await client.start_server()
    try:
        yield server, client
    finally:
        await client.close()


async def connect_extension(server, client, origin, wait_until):
    ws = await client.ws_connect("/extension", headers={"Origin": origin})
    await wait_until(lambda: server.table.link is not None and not server.table.link.closed)
    return ws


async def connect_client(server, client, client_id, wait_until, query=""):
    ws = await client.ws_connect(f"/cdp/{client_id}{query}")
    await wait_until(lambda: server.table.get_client(client_id) is not None)
    return ws


async def assert_silent(ws, timeout=0.2):
    with pytest.raises(asyncio.TimeoutError):
        await ws.receive_json(timeout=timeout)


def attached_event(session_id, tab_id, title="Example", url="https://example.com"):
    return {
        "method": "forwardCDPEvent",
        "params": {
            "method": "Target.attachedToTarget",
            "sessionId": session_id,
            "params": {
                "sessionId": session_id,
                "targetInfo": {
                    "targetId": session_id,
                    "type": "page",
                    "tabId": tab_id,
                    "title": title,
                    "url": url,
                },
            },
        },
    }


class TestHttpEndpoints:

    @pytest.mark.asyncio
    async def test_root_ok(self, relay):
        _, client = relay

        response = await client.get("/")

        assert response.status == 200
        assert await response.text() == "OK"

    @pytest.mark.asyncio
    async def test_version(self, relay):
        _, client = relay

        data = await (await client.get("/version")).json()

        assert "version" in data

    @pytest.mark.asyncio
    async def test_json_version(self, relay, relay_config):
        _, client = relay

        data = await (await client.get("/json/version")).json()

        assert data["Protocol-Version"] == "1.3"
        assert data["Browser"].startswith("tabrelay/")
        assert data["webSocketDebuggerUrl"] == f"ws://127.0.0.1:{relay_config.port}/cdp/default"

    @pytest.mark.asyncio
    async def test_json_list_empty(self, relay):
        _, client = relay

        assert await (await client.get("/json/list")).json() == []
        assert await (await client.get("/json")).json() == []

    @pytest.mark.asyncio
    async def test_status(self, relay, relay_config):
        _, client = relay

        data = await (await client.get("/status")).json()

        assert data["extension_connected"] is False
        assert data["cdp_clients_count"] == 0
        assert data["pending_requests"] == 0
        assert data["relay_port"] == relay_config.port


class TestCommandRouting:

    @pytest.mark.asyncio
    async def test_navigate_round_trip(self, relay, extension_origin, wait_until):
        """Client id 1 becomes relay id 1 and the answer comes back without a sessionId"""
        server, client = relay
        ext = await connect_extension(server, client, extension_origin, wait_until)
        cdp = await connect_client(server, client, "c1", wait_until)

        await cdp.send_json({"id": 1, "method": "Page.navigate", "params": {"url": "https://example.com"}})

        envelope = await ext.receive_json(timeout=2)
        assert envelope == {
            "id": 1,
            "method": "forwardCDPCommand",
            "params": {"method": "Page.navigate", "params": {"url": "https://example.com"}},
        }

        await ext.send_json({"id": 1, "result": {"frameId": "f1"}})

        reply = await cdp.receive_json(timeout=2)
        assert reply == {"id": 1, "result": {"frameId": "f1"}}
        await server.drain()
        assert server.table.pending_count == 0

    @pytest.mark.asyncio
    async def test_session_id_restored_on_reply(self, relay, extension_origin, wait_until):
        server, client = relay
        ext = await connect_extension(server, client, extension_origin, wait_until)
        cdp = await connect_client(server, client, "c1", wait_until)

        await cdp.send_json({"id": 9, "method": "Runtime.enable", "sessionId": "tab-1-x"})
        envelope = await ext.receive_json(timeout=2)
        assert envelope["params"]["sessionId"] == "tab-1-x"

        await ext.send_json({"id": envelope["id"], "error": "Debugger is not attached"})

        reply = await cdp.receive_json(timeout=2)
        assert reply == {
            "id": 9,
            "sessionId": "tab-1-x",
            "error": {"message": "Debugger is not attached"},
        }

    @pytest.mark.asyncio
    async def test_two_clients_same_id_isolated(self, relay, extension_origin, wait_until):
        server, client = relay
        ext = await connect_extension(server, client, extension_origin, wait_until)
        c1 = await connect_client(server, client, "c1", wait_until)
        c2 = await connect_client(server, client, "c2", wait_until)

        await c1.send_json({"id": 1, "method": "Runtime.evaluate", "params": {"expression": "'a'"}})
        first = await ext.receive_json(timeout=2)
        await c2.send_json({"id": 1, "method": "Runtime.evaluate", "params": {"expression": "'b'"}})
        second = await ext.receive_json(timeout=2)

        assert first["id"] != second["id"]

        # Answer out of order
        await ext.send_json({"id": second["id"], "result": {"value": "B"}})
        await ext.send_json({"id": first["id"], "result": {"value": "A"}})

        assert await c2.receive_json(timeout=2) == {"id": 1, "result": {"value": "B"}}
        assert await c1.receive_json(timeout=2) == {"id": 1, "result": {"value": "A"}}
        await assert_silent(c1)
        await assert_silent(c2)

    @pytest.mark.asyncio
    async def test_wrapped_client_command_accepted(self, relay, extension_origin, wait_until):
        server, client = relay
        ext = await connect_extension(server, client, extension_origin, wait_until)
        cdp = await connect_client(server, client, "c1", wait_until)

        await cdp.send_json({
            "id": 4,
            "method": "forwardCDPCommand",
            "params": {"method": "Page.reload", "sessionId": "s1"},
        })

        envelope = await ext.receive_json(timeout=2)
        assert envelope["params"] == {"method": "Page.reload", "sessionId": "s1"}

    @pytest.mark.asyncio
    async def test_no_extension_sends_nothing(self, relay, wait_until):
        server, client = relay
        cdp = await connect_client(server, client, "c1", wait_until)

        await cdp.send_json({"id": 1, "method": "Page.enable"})
        await asyncio.sleep(0.05)
        await server.drain()

        await assert_silent(cdp)
        assert server.table.pending_count == 0

    @pytest.mark.asyncio
    async def test_no_extension_error_reply_when_enabled(self, relay_config, wait_until):
        relay_config.relay.reply_without_extension = True
        server = RelayServer(relay_config)
        client = TestClient(TestServer(server.create_app()))
        await client.start_server()
        try:
            cdp = await connect_client(server, client, "c1", wait_until)

            await cdp.send_json({"id": 3, "method": "Page.enable"})

            reply = await cdp.receive_json(timeout=2)
            assert reply == {"id": 3, "error": {"message": "Extension not connected"}}
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_malformed_frames_dropped(self, relay, extension_origin, wait_until):
        server, client = relay
        ext = await connect_extension(server, client, extension_origin, wait_until)
        cdp = await connect_client(server, client, "c1", wait_until)

        await cdp.send_str("not json")
        await cdp.send_json({"method": "Page.enable"})
        await ext.send_json({"method": "unknownThing"})
        await cdp.send_json({"id": 2, "method": "Page.enable"})

        envelope = await ext.receive_json(timeout=2)
        assert envelope["params"]["method"] == "Page.enable"
        assert not cdp.closed
        assert not ext.closed

    @pytest.mark.asyncio
    async def test_unknown_response_id_dropped(self, relay, extension_origin, wait_until):
        server, client = relay
        ext = await connect_extension(server, client, extension_origin, wait_until)
        cdp = await connect_client(server, client, "c1", wait_until)

        await ext.send_json({"id": 999, "result": {}})
        await asyncio.sleep(0.05)
        await server.drain()

        await assert_silent(cdp)

    @pytest.mark.asyncio
    async def test_late_response_after_client_left(self, relay, extension_origin, wait_until):
        server, client = relay
        ext = await connect_extension(server, client, extension_origin, wait_until)
        cdp = await connect_client(server, client, "c1", wait_until)

        await cdp.send_json({"id": 1, "method": "Page.enable"})
        envelope = await ext.receive_json(timeout=2)
        await cdp.close()
        await wait_until(lambda: server.table.get_client("c1") is None)

        await ext.send_json({"id": envelope["id"], "result": {}})
        await wait_until(lambda: server.table.pending_count == 0)


class TestEventsAndSessions:

    @pytest.mark.asyncio
    async def test_events_broadcast_to_all_clients(self, relay, extension_origin, wait_until):
        server, client = relay
        ext = await connect_extension(server, client, extension_origin, wait_until)
        c1 = await connect_client(server, client, "c1", wait_until)
        c2 = await connect_client(server, client, "c2", wait_until)

        await ext.send_json({
            "method": "forwardCDPEvent",
            "params": {"method": "Page.loadEventFired", "sessionId": "s1", "params": {"timestamp": 2}},
        })

        expected = {"method": "Page.loadEventFired", "params": {"timestamp": 2}, "sessionId": "s1"}
        assert await c1.receive_json(timeout=2) == expected
        assert await c2.receive_json(timeout=2) == expected

    @pytest.mark.asyncio
    async def test_events_keep_emission_order(self, relay, extension_origin, wait_until):
        server, client = relay
        ext = await connect_extension(server, client, extension_origin, wait_until)
        cdp = await connect_client(server, client, "c1", wait_until)

        for index in range(20):
            await ext.send_json({
                "method": "forwardCDPEvent",
                "params": {"method": "Network.dataReceived", "sessionId": "s1", "params": {"n": index}},
            })

        received = [(await cdp.receive_json(timeout=2))["params"]["n"] for _ in range(20)]
        assert received == list(range(20))

    @pytest.mark.asyncio
    async def test_attach_then_detach_updates_listing(self, relay, relay_config, extension_origin, wait_until):
        server, client = relay
        ext = await connect_extension(server, client, extension_origin, wait_until)
        cdp = await connect_client(server, client, "c1", wait_until)

        await ext.send_json(attached_event("tab-7-a", 7))
        event = await cdp.receive_json(timeout=2)
        assert event["method"] == "Target.attachedToTarget"

        listing = await (await client.get("/json/list")).json()
        assert listing == [{
            "id": "tab-7-a",
            "tabId": 7,
            "type": "page",
            "title": "Example",
            "url": "https://example.com",
            "webSocketDebuggerUrl": f"ws://127.0.0.1:{relay_config.port}/cdp/tab-7-a",
            "sessionId": "tab-7-a",
        }]

        await ext.send_json({
            "method": "forwardCDPEvent",
            "params": {
                "method": "Target.detachedFromTarget",
                "sessionId": "tab-7-a",
                "params": {"sessionId": "tab-7-a"},
            },
        })
        await cdp.receive_json(timeout=2)

        assert await (await client.get("/json/list")).json() == []

    @pytest.mark.asyncio
    async def test_extension_disconnect_clears_state(self, relay, extension_origin, wait_until):
        server, client = relay
        ext = await connect_extension(server, client, extension_origin, wait_until)
        cdp = await connect_client(server, client, "c1", wait_until)

        await ext.send_json(attached_event("tab-1-a", 1))
        await cdp.receive_json(timeout=2)
        await cdp.send_json({"id": 1, "method": "Page.enable", "sessionId": "tab-1-a"})
        await ext.receive_json(timeout=2)
        assert server.table.pending_count == 1

        await ext.close()
        await wait_until(lambda: server.table.link is None)

        assert server.table.pending_count == 0
        assert await (await client.get("/json/list")).json() == []

        # A late answer on a fresh link is dropped
        ext2 = await connect_extension(server, client, extension_origin, wait_until)
        await ext2.send_json({"id": 1, "result": {}})
        await asyncio.sleep(0.05)
        await server.drain()
        await assert_silent(cdp)

    @pytest.mark.asyncio
    async def test_new_extension_link_replaces_old(self, relay, extension_origin, wait_until):
        server, client = relay
        first = await connect_extension(server, client, extension_origin, wait_until)
        first_link = server.table.link

        second = await client.ws_connect("/extension", headers={"Origin": extension_origin})
        await wait_until(lambda: server.table.link is not first_link)

        msg = await first.receive(timeout=2)
        assert msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED)

        cdp = await connect_client(server, client, "c1", wait_until)
        await cdp.send_json({"id": 1, "method": "Page.enable"})
        assert (await second.receive_json(timeout=2))["params"]["method"] == "Page.enable"

    @pytest.mark.asyncio
    async def test_extension_log_frames_are_not_forwarded(self, relay, extension_origin, wait_until):
        server, client = relay
        ext = await connect_extension(server, client, extension_origin, wait_until)
        cdp = await connect_client(server, client, "c1", wait_until)

        await ext.send_json({"method": "log", "params": {"level": "error", "args": ["boom"]}})
        await ext.send_json({"method": "pong"})
        await asyncio.sleep(0.05)
        await server.drain()

        await assert_silent(cdp)
        assert server.table.link.last_pong_at is not None


class TestAuthorization:

    async def _assert_rejected(self, ws):
        msg = await ws.receive(timeout=2)
        assert msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED)
        assert ws.close_code == WSCloseCode.POLICY_VIOLATION

    @pytest.mark.asyncio
    async def test_unlisted_origin_rejected(self, relay):
        server, client = relay

        ws = await client.ws_connect("/extension", headers={"Origin": "chrome-extension://someone-else"})

        await self._assert_rejected(ws)
        assert server.table.link is None

    @pytest.mark.asyncio
    async def test_missing_origin_rejected(self, relay):
        server, client = relay

        ws = await client.ws_connect("/extension")

        await self._assert_rejected(ws)

    @pytest.mark.asyncio
    async def test_non_loopback_peer_rejected(self, relay, extension_origin):
        server, client = relay

        with patch("tabrelay.relay.auth.is_loopback_address", return_value=False):
            ext = await client.ws_connect("/extension", headers={"Origin": extension_origin})
            await self._assert_rejected(ext)
            cdp = await client.ws_connect("/cdp/c1")
            await self._assert_rejected(cdp)

        assert server.table.link is None
        assert server.table.clients == []

    @pytest.mark.asyncio
    async def test_token_checked_for_clients(self, relay_config, wait_until):
        relay_config.token = "secret"
        server = RelayServer(relay_config)
        client = TestClient(TestServer(server.create_app()))
        await client.start_server()
        try:
            rejected = await client.ws_connect("/cdp/c1?token=wrong")
            await self._assert_rejected(rejected)
            missing = await client.ws_connect("/cdp/c1")
            await self._assert_rejected(missing)

            accepted = await connect_client(server, client, "c1", wait_until, query="?token=secret")
            assert not accepted.closed
        finally:
            await client.close()


class TestTicks:

    @pytest.mark.asyncio
    async def test_ping_sent_to_extension(self, relay_config, extension_origin, wait_until):
        relay_config.relay.heartbeat_interval = 0.05
        server = RelayServer(relay_config)
        client = TestClient(TestServer(server.create_app()))
        await client.start_server()
        try:
            ext = await connect_extension(server, client, extension_origin, wait_until)

            assert await ext.receive_json(timeout=2) == {"method": "ping"}
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_pending_timeout_answers_with_error(self, relay_config, extension_origin, wait_until):
        relay_config.relay.pending_timeout = 0.1
        server = RelayServer(relay_config)
        client = TestClient(TestServer(server.create_app()))
        await client.start_server()
        try:
            ext = await connect_extension(server, client, extension_origin, wait_until)
            cdp = await connect_client(server, client, "c1", wait_until)

            await cdp.send_json({"id": 5, "method": "Page.enable"})
            await ext.receive_json(timeout=2)

            reply = await cdp.receive_json(timeout=2)
            assert reply == {"id": 5, "error": {"message": "Request timed out"}}
            assert server.table.pending_count == 0
        finally:
            await client.close()
