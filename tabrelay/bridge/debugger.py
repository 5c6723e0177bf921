"""
Debugger backends for the bridge.

The bridge only talks to a `DebuggerBackend`: attach/detach a tab, send a
native command, subscribe to a tab's events. `RemoteDebuggingBackend`
implements it against a Chrome started with ``--remote-debugging-port``,
with one CDP socket per attached tab.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import httpx

from ..cdp import CDPConnection, CDPEvent
from ..errors import CommandExecutionError, ConnectionSetupError

logger = logging.getLogger(__name__)

INSPECTOR_DETACHED = "Inspector.detached"

DebuggerListener = Callable[[str, dict[str, Any]], None]


@dataclass
class TabInfo:
    """A browser tab as reported by the backend"""
    tab_id: Any
    title: str = ""
    url: str = ""
    active: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.tab_id,
            "title": self.title,
            "url": self.url,
            "active": self.active,
        }


class DebuggerSubscription:
    """Handle for one tab's event listener; unsubscribe() is idempotent"""

    def __init__(self, tab_id: Any, remover: Callable[[], None]):
        self.tab_id = tab_id
        self._remover: Callable[[], None] | None = remover

    @property
    def active(self) -> bool:
        return self._remover is not None

    def unsubscribe(self) -> None:
        if self._remover is None:
            return
        remover, self._remover = self._remover, None
        remover()


@runtime_checkable
class DebuggerBackend(Protocol):
    """Native debugger attached to browser tabs"""

    async def attach(self, tab_id: Any, version: str) -> None: ...

    async def detach(self, tab_id: Any) -> None: ...

    async def send_command(
        self, tab_id: Any, method: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]: ...

    def subscribe(self, tab_id: Any, listener: DebuggerListener) -> DebuggerSubscription: ...

    async def list_tabs(self) -> list[TabInfo]: ...

    async def active_tab(self) -> Optional[TabInfo]: ...

    async def clear_browser_cache(self, tab_id: Any) -> None: ...

    async def reload(self, tab_id: Any, bypass_cache: bool = True) -> None: ...


class RemoteDebuggingBackend:
    """
    DebuggerBackend over Chrome's remote debugging HTTP/WebSocket endpoints

    Example:
        backend = RemoteDebuggingBackend("127.0.0.1", 9222)
        tab = await backend.active_tab()
        await backend.attach(tab.tab_id, "1.3")
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9222,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
    ):
        self.base_url = f"http://{host}:{port}"
        self._http = http_client
        self._owns_http = http_client is None
        self._timeout = timeout
        self._connections: dict[Any, CDPConnection] = {}
        self._listeners: dict[Any, list[DebuggerListener]] = {}
        self._detaching: set[Any] = set()

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def _targets(self) -> list[dict[str, Any]]:
        client = await self._client()
        try:
            response = await client.get(f"{self.base_url}/json/list")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ConnectionSetupError(f"Chrome not reachable at {self.base_url}: {e}") from e
        targets = response.json()
        return [t for t in targets if isinstance(t, dict) and t.get("type") == "page"]

    async def list_tabs(self) -> list[TabInfo]:
        targets = await self._targets()
        # Chrome lists the most recently focused page first
        return [
            TabInfo(
                tab_id=t.get("id"),
                title=t.get("title", ""),
                url=t.get("url", ""),
                active=index == 0,
            )
            for index, t in enumerate(targets)
        ]

    async def active_tab(self) -> Optional[TabInfo]:
        tabs = await self.list_tabs()
        return tabs[0] if tabs else None

    async def attach(self, tab_id: Any, version: str) -> None:
        if tab_id in self._connections:
            raise CommandExecutionError(f"Another debugger is already attached to tab {tab_id}")

        targets = await self._targets()
        target = next((t for t in targets if t.get("id") == tab_id), None)
        if target is None:
            raise CommandExecutionError(f"No tab with id: {tab_id}")
        ws_url = target.get("webSocketDebuggerUrl")
        if not ws_url:
            raise CommandExecutionError(f"Tab {tab_id} is already being debugged by another client")

        connection = CDPConnection(ws_url, command_timeout=None, name=f"tab {tab_id}")
        await connection.connect()
        connection.add_listener(lambda event: self._dispatch(tab_id, event))
        connection.on_close(lambda: self._on_connection_closed(tab_id, connection))
        self._connections[tab_id] = connection
        logger.debug(f"Attached to tab {tab_id} (protocol {version})")

    async def detach(self, tab_id: Any) -> None:
        connection = self._connections.pop(tab_id, None)
        if connection is None:
            raise CommandExecutionError(f"Debugger is not attached to the tab with id: {tab_id}")
        self._detaching.add(tab_id)
        try:
            await connection.close()
        finally:
            self._detaching.discard(tab_id)

    async def send_command(
        self, tab_id: Any, method: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        connection = self._connections.get(tab_id)
        if connection is None or connection.closed:
            raise CommandExecutionError(
                f"Debugger is not attached to the tab with id: {tab_id}", method=method
            )
        return await connection.send(method, params)

    def subscribe(self, tab_id: Any, listener: DebuggerListener) -> DebuggerSubscription:
        listeners = self._listeners.setdefault(tab_id, [])
        listeners.append(listener)

        def remove() -> None:
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(tab_id, None)

        return DebuggerSubscription(tab_id, remove)

    async def clear_browser_cache(self, tab_id: Any) -> None:
        await self.send_command(tab_id, "Network.clearBrowserCache")

    async def reload(self, tab_id: Any, bypass_cache: bool = True) -> None:
        await self.send_command(tab_id, "Page.reload", {"ignoreCache": bypass_cache})

    async def close(self) -> None:
        for tab_id in list(self._connections):
            try:
                await self.detach(tab_id)
            except CommandExecutionError:
                pass
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _dispatch(self, tab_id: Any, event: CDPEvent) -> None:
        for listener in list(self._listeners.get(tab_id, [])):
            listener(event.method, event.params)

    def _on_connection_closed(self, tab_id: Any, connection: CDPConnection) -> None:
        if self._connections.get(tab_id) is connection:
            del self._connections[tab_id]
        if tab_id in self._detaching:
            return
        logger.info(f"Debugger connection to tab {tab_id} closed")
        self._dispatch(tab_id, CDPEvent(INSPECTOR_DETACHED, {"reason": "target_closed"}))


__all__ = [
    "INSPECTOR_DETACHED",
    "DebuggerBackend",
    "DebuggerListener",
    "DebuggerSubscription",
    "RemoteDebuggingBackend",
    "TabInfo",
]
