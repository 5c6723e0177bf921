"""
End-to-end: relay + bridge (scripted debugger) + client connector over real sockets
"""
import asyncio
import base64

import httpx
import pytest
import pytest_asyncio
from aiohttp import WSCloseCode

from tabrelay.bridge import Bridge
from tabrelay.client import ClientConnector, ConnectionState
from tabrelay.relay import RelayServer


def dom_ready_after_navigate(backend, tab_id):
    """Page.navigate answer that starts a load and then fires DOMContentLoaded on the tab"""
    def navigate(params):
        asyncio.get_running_loop().call_soon(
            backend.emit, tab_id, "Page.domContentEventFired", {"timestamp": 1}
        )
        return {"frameId": "f1", "loaderId": "l1"}

    return navigate


@pytest_asyncio.fixture
async def stack(relay_config, fake_backend, wait_until):
    config = relay_config.model_copy(update={
        "bridge": relay_config.bridge.model_copy(update={
            "extension_id": "test-extension",
            "probe_interval": 0.05,
            "maintain_interval": 0.1,
        }),
        "connector": relay_config.connector.model_copy(update={"launch_relay": False, "navigation_timeout": 2.0}),
    })
    fake_backend.responses["Runtime.evaluate"] = {"result": {"type": "string", "value": "Example"}}
    fake_backend.responses["Page.captureScreenshot"] = {"data": base64.b64encode(b"png-bytes").decode()}

    relay = RelayServer(config)
    await relay.start()
    bridge = Bridge(config, fake_backend)
    await bridge.start()
    await wait_until(lambda: bridge.connected and relay.table.link is not None)
    connector = ClientConnector(config)
    try:
        yield relay, bridge, connector
    finally:
        await connector.close()
        await bridge.stop()
        await relay.stop()


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_operations_reach_the_tab(self, stack, fake_backend, wait_until):
        relay, bridge, connector = stack
        attachment = await bridge.attach_tab(1)
        await wait_until(lambda: len(relay.table.targets) == 1)

        title = await connector.execute("document.title")
        shot = await connector.screenshot()

        assert title.success, title.error
        assert title.value == "Example"
        assert shot.success, shot.error
        assert shot.value == b"png-bytes"
        assert connector.state is ConnectionState.CONNECTED
        assert connector.page.session_id == attachment.session_id
        methods = [method for tab_id, method, _ in fake_backend.commands if tab_id == 1]
        assert "Page.captureScreenshot" in methods

    @pytest.mark.asyncio
    async def test_no_tab_attached_reports_error(self, stack):
        _, _, connector = stack

        result = await connector.execute("document.title")

        assert not result.success
        assert "No target tab attached" in result.error
        assert connector.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_reattached_tab_keeps_navigation_working(self, stack, fake_backend, wait_until):
        relay, bridge, connector = stack
        fake_backend.responses["Page.navigate"] = dom_ready_after_navigate(fake_backend, 1)
        first = await bridge.attach_tab(1)
        await wait_until(lambda: [t.session_id for t in relay.table.targets] == [first.session_id])

        result = await connector.navigate("https://example.com/a")
        assert result.success, result.error

        await bridge.detach_tab(1)
        second = await bridge.attach_tab(1)
        await wait_until(lambda: [t.session_id for t in relay.table.targets] == [second.session_id])

        for url in ("https://example.com/b", "https://example.com/c"):
            result = await connector.navigate(url)
            assert result.success, result.error
        assert connector.page.session_id == second.session_id

    @pytest.mark.asyncio
    async def test_reconnected_bridge_reannounces_attachments(self, stack, wait_until):
        relay, bridge, _ = stack
        attachment = await bridge.attach_tab(1)
        await wait_until(lambda: len(relay.table.targets) == 1)
        old_link = relay.table.link

        await old_link.close(WSCloseCode.GOING_AWAY, "Relay restarting")
        await wait_until(
            lambda: relay.table.link not in (None, old_link) and len(relay.table.targets) == 1,
            timeout=5.0,
        )

        async with httpx.AsyncClient() as client:
            response = await client.get(f"{relay.config.http_url}/json/list")
        listing = response.json()
        assert [entry["sessionId"] for entry in listing] == [attachment.session_id]
        assert listing[0]["tabId"] == 1
        assert bridge.get_attachment(1) is attachment
