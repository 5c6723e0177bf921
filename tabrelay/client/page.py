"""
Page-level helpers over a CDP connection.

`PageSession` wraps one session id on the relay and turns the handful of
CDP calls the connector needs (screenshot, accessibility tree, evaluate,
navigation) into plain async methods.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, Optional

from ..cdp import CDPConnection
from ..errors import CommandExecutionError, RequestTimeoutError

logger = logging.getLogger(__name__)

DOM_CONTENT_EVENT = "Page.domContentEventFired"

# Errors thrown by the script are caught inside the page and returned as data
EXECUTE_WRAPPER = """(() => {
  try {
    return eval(%s);
  } catch (e) {
    return { error: String(e) };
  }
})()"""


def _ax_value(prop: Optional[dict[str, Any]]) -> Any:
    if not isinstance(prop, dict):
        return None
    return prop.get("value")


def build_accessibility_tree(nodes: list[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Nest a flat Accessibility.getFullAXTree node list.

    Ignored nodes are dropped and their children hoisted into the nearest
    kept ancestor.
    """
    if not nodes:
        return None

    by_id = {node.get("nodeId"): node for node in nodes}
    root = next((node for node in nodes if not node.get("parentId")), nodes[0])

    def convert(node: dict[str, Any]) -> list[dict[str, Any]]:
        children: list[dict[str, Any]] = []
        for child_id in node.get("childIds") or []:
            child = by_id.get(child_id)
            if child is not None:
                children.extend(convert(child))

        if node.get("ignored"):
            return children

        entry: dict[str, Any] = {
            "role": _ax_value(node.get("role")) or "",
            "name": _ax_value(node.get("name")) or "",
        }
        value = _ax_value(node.get("value"))
        if value not in (None, ""):
            entry["value"] = value
        description = _ax_value(node.get("description"))
        if description:
            entry["description"] = description
        entry["children"] = children
        return [entry]

    converted = convert(root)
    if not converted:
        return None
    if len(converted) == 1:
        return converted[0]
    return {"role": "root", "name": "", "children": converted}


class PageSession:
    """One page reached through the relay"""

    def __init__(
        self,
        connection: CDPConnection,
        session_id: str | None,
        *,
        navigation_timeout: float = 30.0,
    ):
        self.connection = connection
        self.session_id = session_id
        self.navigation_timeout = navigation_timeout

    async def send(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> dict[str, Any]:
        return await self.connection.send(method, params, session_id=self.session_id, timeout=timeout)

    async def evaluate(self, expression: str, timeout: float | None = None) -> Any:
        """Evaluate an expression and return its JSON value"""
        result = await self.send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": True},
            timeout=timeout,
        )
        details = result.get("exceptionDetails")
        if details:
            exception = details.get("exception") or {}
            message = exception.get("description") or details.get("text") or "Evaluation failed"
            raise CommandExecutionError(message, method="Runtime.evaluate")
        return (result.get("result") or {}).get("value")

    async def title(self, timeout: float | None = None) -> str:
        value = await self.evaluate("document.title", timeout=timeout)
        return value if isinstance(value, str) else ""

    async def execute(self, code: str) -> Any:
        """Run user code; a thrown error comes back as {"error": "..."}"""
        return await self.evaluate(EXECUTE_WRAPPER % json.dumps(code))

    async def screenshot(self) -> bytes:
        result = await self.send("Page.captureScreenshot", {"format": "png"})
        data = result.get("data")
        if not data:
            raise CommandExecutionError("Screenshot returned no data", method="Page.captureScreenshot")
        return base64.b64decode(data)

    async def accessibility_snapshot(self) -> Optional[dict[str, Any]]:
        result = await self.send("Accessibility.getFullAXTree")
        return build_accessibility_tree(result.get("nodes") or [])

    async def navigate(self, url: str) -> dict[str, Any]:
        """Navigate and wait for DOMContentLoaded (same-document navigations return at once)"""
        waiter = self.connection.expect_event(DOM_CONTENT_EVENT, self.session_id)
        try:
            result = await self.send("Page.navigate", {"url": url})
            error_text = result.get("errorText")
            if error_text:
                raise CommandExecutionError(f"Navigation to {url} failed: {error_text}", method="Page.navigate")
            if result.get("loaderId"):
                await self._wait_dom_ready(waiter)
            return result
        finally:
            if not waiter.done():
                waiter.cancel()

    async def reload(self, ignore_cache: bool = True) -> None:
        waiter = self.connection.expect_event(DOM_CONTENT_EVENT, self.session_id)
        try:
            await self.send("Page.reload", {"ignoreCache": ignore_cache})
            await self._wait_dom_ready(waiter)
        finally:
            if not waiter.done():
                waiter.cancel()

    async def clear_browser_data(self) -> None:
        await self.send("Network.clearBrowserCache")
        await self.send("Network.clearBrowserCookies")

    async def _wait_dom_ready(self, waiter: asyncio.Future) -> None:
        try:
            await asyncio.wait_for(waiter, timeout=self.navigation_timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(
                f"Timed out after {self.navigation_timeout}s waiting for {DOM_CONTENT_EVENT}"
            ) from e


__all__ = [
    "DOM_CONTENT_EVENT",
    "EXECUTE_WRAPPER",
    "PageSession",
    "build_accessibility_tree",
]
