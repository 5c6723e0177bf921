"""
Browser-side bridge.

Holds the debugger attachments and the single WebSocket to the relay's
``/extension`` endpoint:

    relay --forwardCDPCommand--> Bridge --send_command--> DebuggerBackend
    relay <--{id, result|error}-- Bridge
    relay <--forwardCDPEvent---- Bridge <--subscription-- DebuggerBackend

Every frame to the relay goes through one outbox queue drained by one
writer task, so the relay sees events in the order they were emitted.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import websockets
from websockets.asyncio.client import ClientConnection, connect
from websockets.protocol import State

from ..config import PROTOCOL_VERSION, TabRelayConfig
from ..errors import ConnectionSetupError, NoTargetError, ProtocolDecodeError
from ..infra.retry_policy import fixed_interval, retry_async
from ..relay.protocol import (
    TARGET_ATTACHED,
    TARGET_DETACHED,
    BridgeResponse,
    EventPayload,
    ForwardCDPCommand,
    ForwardCDPEvent,
    Ping,
    Pong,
    decode_relay_message,
)
from .debugger import INSPECTOR_DETACHED, DebuggerBackend, DebuggerSubscription, TabInfo

logger = logging.getLogger(__name__)

ENABLED_DOMAINS = ("Page", "Runtime", "Network")


@dataclass
class TabAttachment:
    """One attached tab and its synthesized session"""
    tab_id: Any
    session_id: str
    subscription: DebuggerSubscription
    title: str = ""
    url: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def target_info(self) -> dict[str, Any]:
        return {
            "targetId": self.session_id,
            "type": "page",
            "tabId": self.tab_id,
            "title": self.title,
            "url": self.url,
        }


class Bridge:
    """
    Extension-side half of the relay

    Example:
        backend = RemoteDebuggingBackend(config.bridge.chrome_host, config.bridge.chrome_port)
        bridge = Bridge(config, backend)
        await bridge.start()
        await bridge.connect_active_tab()
    """

    def __init__(
        self,
        config: TabRelayConfig,
        backend: DebuggerBackend,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.settings = config.bridge
        self.backend = backend

        self._http = http_client
        self._owns_http = http_client is None
        self._ws: ClientConnection | None = None
        self._connecting: asyncio.Task | None = None
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._maintain_task: asyncio.Task | None = None
        self._command_tasks: set[asyncio.Task] = set()

        self._attachments: dict[Any, TabAttachment] = {}
        self._attach_lock = asyncio.Lock()
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    @property
    def origin(self) -> str:
        return f"chrome-extension://{self.settings.extension_id}"

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    @property
    def attachments(self) -> list[TabAttachment]:
        return list(self._attachments.values())

    def get_attachment(self, tab_id: Any) -> Optional[TabAttachment]:
        return self._attachments.get(tab_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the writer and the maintain loop (connects in the background)"""
        logger.info("Bridge initializing...")
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._write_loop())
        if self._maintain_task is None:
            self._maintain_task = asyncio.create_task(self._maintain_loop())
        logger.info("Bridge initialized")

    async def stop(self) -> None:
        """Detach every tab, close the relay link and stop background tasks"""
        if self._maintain_task is not None:
            self._maintain_task.cancel()
            try:
                await self._maintain_task
            except asyncio.CancelledError:
                pass
            self._maintain_task = None

        for tab_id in list(self._attachments):
            await self.detach_tab(tab_id, skip_detached_event=True)

        for task in list(self._command_tasks):
            task.cancel()

        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        if self._writer_task is not None:
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
            self._writer_task = None

        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def _maintain_loop(self) -> None:
        while True:
            try:
                await self.ensure_connection()
            except ConnectionSetupError as e:
                logger.error(f"Connection error, will retry: {e}")
            except Exception as e:
                logger.error(f"Unexpected connection error, will retry: {e}", exc_info=True)
            await asyncio.sleep(self.settings.maintain_interval)

    # ------------------------------------------------------------------
    # Relay connection
    # ------------------------------------------------------------------

    async def ensure_connection(self) -> None:
        """Connect to the relay unless already connected; concurrent callers share one attempt"""
        if self.connected:
            return
        if self._connecting is None or self._connecting.done():
            self._connecting = asyncio.create_task(self._connect())
        await asyncio.shield(self._connecting)

    async def _probe_relay(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.settings.probe_timeout)
        response = await self._http.get(f"{self.config.http_url}/", timeout=self.settings.probe_timeout)
        response.raise_for_status()

    async def _connect(self) -> None:
        try:
            await retry_async(
                self._probe_relay,
                fixed_interval(self.settings.probe_attempts, self.settings.probe_interval),
                label="relay probe",
            )
        except Exception as e:
            raise ConnectionSetupError(f"Relay server not available at {self.config.http_url}") from e

        url = self.config.extension_url()
        logger.info(f"Connecting to relay: {url}")
        try:
            ws = await connect(
                url,
                origin=self.origin,
                open_timeout=self.settings.open_timeout,
                max_size=self.config.relay.max_message_size,
            )
        except Exception as e:
            raise ConnectionSetupError(f"WebSocket connection failed: {e}") from e

        self._ws = ws
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._write_loop())
        logger.info("WebSocket connected")

        self._announce_attachments()
        if self.settings.attach_active_tab and not self._attachments:
            try:
                await self.connect_active_tab()
            except Exception as e:
                logger.error(f"Failed to attach active tab: {e}")

    async def _read_loop(self, ws: ClientConnection) -> None:
        try:
            async for raw in ws:
                await self.handle_relay_message(raw)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            if self._ws is ws:
                self._ws = None
            logger.info(f"WebSocket closed: {ws.close_code} {ws.close_reason or ''}".rstrip())

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            ws = self._ws
            if ws is None or ws.state is not State.OPEN:
                logger.debug("Dropping frame, relay not connected")
                continue
            try:
                await ws.send(json.dumps(message))
            except websockets.exceptions.ConnectionClosed as e:
                logger.warning(f"Dropping frame, relay socket closed: {e}")

    def _send(self, message: dict[str, Any]) -> None:
        if not self.connected:
            logger.debug("Cannot send message, WebSocket not connected")
            return
        self._outbox.put_nowait(message)

    def _emit_event(self, method: str, session_id: str, params: dict[str, Any]) -> None:
        frame = ForwardCDPEvent(params=EventPayload(method=method, session_id=session_id, params=params))
        self._send(frame.to_wire())

    def _announce_attachments(self) -> None:
        for attachment in self._attachments.values():
            self._emit_attached(attachment)

    def _emit_attached(self, attachment: TabAttachment) -> None:
        self._emit_event(
            TARGET_ATTACHED,
            attachment.session_id,
            {"sessionId": attachment.session_id, "targetInfo": attachment.target_info()},
        )

    def _emit_detached(self, attachment: TabAttachment) -> None:
        self._emit_event(TARGET_DETACHED, attachment.session_id, {"sessionId": attachment.session_id})

    # ------------------------------------------------------------------
    # Relay -> Bridge
    # ------------------------------------------------------------------

    async def handle_relay_message(self, raw: str | bytes) -> None:
        try:
            message = decode_relay_message(raw)
        except ProtocolDecodeError as e:
            logger.error(f"Unknown message from relay: {e}")
            return

        if isinstance(message, Ping):
            self._send(Pong().to_wire())
        elif isinstance(message, ForwardCDPCommand):
            task = asyncio.create_task(self.handle_command(message))
            self._command_tasks.add(task)
            task.add_done_callback(self._command_tasks.discard)

    def resolve_target_tab(self, session_id: str | None) -> Optional[TabAttachment]:
        """Tab for a command: exact session match, else the first attached tab"""
        if session_id:
            for attachment in self._attachments.values():
                if attachment.session_id == session_id:
                    return attachment

        first = next(iter(self._attachments.values()), None)
        if first is not None and session_id:
            logger.debug(f"Unknown session {session_id}, falling back to tab {first.tab_id}")
        return first

    async def handle_command(self, envelope: ForwardCDPCommand) -> None:
        payload = envelope.params
        attachment = self.resolve_target_tab(payload.session_id)
        if attachment is None:
            self._send(BridgeResponse(id=envelope.id, error=str(NoTargetError())).to_wire())
            return

        try:
            result = await self.backend.send_command(attachment.tab_id, payload.method, payload.params)
        except Exception as e:
            logger.debug(f"{payload.method} failed on tab {attachment.tab_id}: {e}")
            self._send(BridgeResponse(id=envelope.id, error=str(e)).to_wire())
            return

        self._send(BridgeResponse(id=envelope.id, result=result if result is not None else {}).to_wire())

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def attach_tab(self, tab_id: Any, skip_attached_event: bool = False) -> TabAttachment:
        """Attach the debugger to a tab (no-op when already attached)"""
        async with self._attach_lock:
            existing = self._attachments.get(tab_id)
            if existing is not None:
                return existing

            try:
                attachment = await self._attach(tab_id)
            except Exception as e:
                logger.error(f"Failed to attach tab {tab_id}: {e}")
                raise

        if not skip_attached_event:
            self._emit_attached(attachment)
        logger.info(f"Attached to tab {tab_id}, sessionId: {attachment.session_id}")
        return attachment

    async def _attach(self, tab_id: Any) -> TabAttachment:
        await self.backend.attach(tab_id, PROTOCOL_VERSION)
        try:
            await asyncio.gather(
                *(self.backend.send_command(tab_id, f"{domain}.enable") for domain in ENABLED_DOMAINS)
            )
        except Exception:
            try:
                await self.backend.detach(tab_id)
            except Exception as e:
                logger.debug(f"Error detaching tab {tab_id} after failed attach: {e}")
            raise

        info = await self._tab_info(tab_id)
        session_id = f"tab-{tab_id}-{uuid.uuid4().hex[:12]}"
        subscription = self.backend.subscribe(
            tab_id, lambda method, params: self._on_debugger_event(tab_id, method, params)
        )
        attachment = TabAttachment(
            tab_id=tab_id,
            session_id=session_id,
            subscription=subscription,
            title=info.title if info else "",
            url=info.url if info else "",
        )
        self._attachments[tab_id] = attachment
        return attachment

    async def _tab_info(self, tab_id: Any) -> Optional[TabInfo]:
        try:
            tabs = await self.backend.list_tabs()
        except Exception as e:
            logger.debug(f"Could not list tabs: {e}")
            return None
        return next((tab for tab in tabs if tab.tab_id == tab_id), None)

    async def detach_tab(self, tab_id: Any, skip_detached_event: bool = False) -> bool:
        """Detach a tab; returns False when it was not attached"""
        attachment = self._attachments.pop(tab_id, None)
        if attachment is None:
            return False

        attachment.subscription.unsubscribe()
        try:
            await self.backend.detach(tab_id)
        except Exception as e:
            logger.error(f"Error detaching tab {tab_id}: {e}")

        if not skip_detached_event:
            self._emit_detached(attachment)
        logger.info(f"Detached from tab {tab_id}")
        return True

    def _on_debugger_event(self, tab_id: Any, method: str, params: dict[str, Any]) -> None:
        attachment = self._attachments.get(tab_id)
        if attachment is None:
            return

        self._emit_event(method, attachment.session_id, params or {})

        if method == INSPECTOR_DETACHED:
            self._attachments.pop(tab_id, None)
            attachment.subscription.unsubscribe()
            self._emit_detached(attachment)
            logger.info(f"Debugger detached from tab {tab_id}: {(params or {}).get('reason', 'unknown')}")

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def connect_active_tab(self) -> Any:
        """Attach the active tab; returns its id"""
        tab = await self.backend.active_tab()
        if tab is None or tab.tab_id is None:
            raise NoTargetError("No active tab found")
        await self.attach_tab(tab.tab_id)
        return tab.tab_id

    async def clear_cache_and_reload(self, tab_id: Any = None) -> Any:
        if tab_id is None:
            tab = await self.backend.active_tab()
            tab_id = tab.tab_id if tab else None
        if tab_id is None:
            raise NoTargetError("No tab specified")

        await self.backend.clear_browser_cache(tab_id)
        await self.backend.reload(tab_id, bypass_cache=True)
        logger.info(f"Cleared cache and reloaded tab {tab_id}")
        return tab_id

    async def get_tabs(self) -> list[dict[str, Any]]:
        tabs = await self.backend.list_tabs()
        return [tab.to_dict() for tab in tabs]

    async def handle_control_message(self, message: dict[str, Any]) -> dict[str, Any]:
        """Runtime control messages: connectActiveTab, clearCacheAndReload, getTabs"""
        method = message.get("method")
        try:
            if method == "connectActiveTab":
                tab_id = await self.connect_active_tab()
                return {"success": True, "tabId": tab_id}
            if method == "clearCacheAndReload":
                await self.clear_cache_and_reload(message.get("tabId"))
                return {"success": True}
            if method == "getTabs":
                return {"success": True, "tabs": await self.get_tabs()}
        except Exception as e:
            return {"success": False, "error": str(e)}

        return {"success": False, "error": "Unknown command"}


__all__ = [
    "ENABLED_DOMAINS",
    "Bridge",
    "TabAttachment",
]
