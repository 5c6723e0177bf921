"""
MCP tool server.

Exposes the client connector's operations as MCP tools over stdio. The
lifespan makes sure the relay is up before the first request (fatal when
it cannot be reached or started) and tears everything down on exit.
"""
from __future__ import annotations

import json
import logging
import typing
from contextlib import asynccontextmanager
from typing import Any, Literal

from mcp.server.fastmcp import FastMCP, Image
from mcp.server.fastmcp.exceptions import ToolError
from mcp.types import ToolAnnotations

from . import __version__
from .client import ClientConnector, OperationResult
from .config import TabRelayConfig

logger = logging.getLogger(__name__)

SERVER_NAME = "tabrelay"


class RelayTools:
    """Tool implementations over a ClientConnector"""

    def __init__(self, connector: ClientConnector):
        self.connector = connector

    @staticmethod
    def _unwrap(result: OperationResult) -> Any:
        if not result.success:
            raise ToolError(f"Error: {result.error or result.operation + ' failed'}")
        return result.value

    async def screenshot(self) -> Image:
        data = self._unwrap(await self.connector.screenshot())
        return Image(data=data, format="png")

    async def accessibility_snapshot(self) -> str:
        snapshot = self._unwrap(await self.connector.accessibility_snapshot())
        return json.dumps(snapshot, indent=2)

    async def execute(self, code: str) -> str:
        value = self._unwrap(await self.connector.execute(code))
        return value if isinstance(value, str) else json.dumps(value)

    async def reset(self) -> str:
        return self._unwrap(await self.connector.reset())

    async def clear_cache_and_reload(self, mode: str = "light") -> str:
        return self._unwrap(await self.connector.clear_cache_and_reload(mode))

    async def ensure_fresh_render(self) -> str:
        return self._unwrap(await self.connector.ensure_fresh_render())

    async def navigate(self, url: str) -> str:
        return self._unwrap(await self.connector.navigate(url))


def register_tools(mcp: FastMCP, tools: RelayTools) -> None:
    """Register RelayTools methods as MCP tools via closures."""

    @mcp.tool(annotations=ToolAnnotations(title="Take Screenshot", readOnlyHint=True))
    async def screenshot() -> Image:
        """Take a screenshot of the current page"""
        return await tools.screenshot()

    @mcp.tool(annotations=ToolAnnotations(title="Accessibility Snapshot", readOnlyHint=True))
    async def accessibility_snapshot() -> str:
        """Get accessibility snapshot of the page"""
        return await tools.accessibility_snapshot()

    @mcp.tool(annotations=ToolAnnotations(title="Execute JavaScript", openWorldHint=True))
    async def execute(code: str) -> str:
        """Execute JavaScript code in the page context.

        Args:
            code: JavaScript code to execute. Thrown errors come back as {"error": "..."}.
        """
        return await tools.execute(code)

    @mcp.tool(annotations=ToolAnnotations(title="Reset Connection", idempotentHint=True))
    async def reset() -> str:
        """Reset the CDP connection"""
        return await tools.reset()

    @mcp.tool(annotations=ToolAnnotations(title="Clear Cache and Reload", destructiveHint=True))
    async def clear_cache_and_reload(mode: Literal["light", "aggressive"] = "light") -> str:
        """Clear browser cache and reload the page.

        Args:
            mode: light (reload ignoring cache) or aggressive (also clear cache and cookies)
        """
        return await tools.clear_cache_and_reload(mode)

    @mcp.tool(annotations=ToolAnnotations(title="Ensure Fresh Render"))
    async def ensure_fresh_render() -> str:
        """Ensure the page is freshly rendered (reload ignoring cache)"""
        return await tools.ensure_fresh_render()

    @mcp.tool(annotations=ToolAnnotations(title="Navigate to URL", openWorldHint=True))
    async def navigate(url: str) -> str:
        """Navigate to a URL and wait for DOMContentLoaded"""
        return await tools.navigate(url)


def create_server(config: TabRelayConfig, connector: ClientConnector | None = None) -> FastMCP:
    """Build the FastMCP server; the connector is started in the lifespan."""
    connector = connector or ClientConnector(config)

    @asynccontextmanager
    async def lifespan(server_instance: FastMCP) -> typing.AsyncIterator[None]:
        logger.info("Starting MCP server...")
        await connector.start()
        logger.info("MCP server ready")
        try:
            yield
        finally:
            logger.info("Shutting down...")
            await connector.close()

    mcp = FastMCP(SERVER_NAME, instructions=f"tabrelay {__version__}", lifespan=lifespan)
    register_tools(mcp, RelayTools(connector))
    return mcp


__all__ = [
    "RelayTools",
    "create_server",
    "register_tools",
]
