"""Relay server implementation

The relay is a switchboard between:
1. One extension link (the browser-side bridge holding debugger attachments)
2. Any number of CDP clients (automation processes)

Architecture:
    RelayServer (aiohttp, one port, HTTP + WebSocket)
        ├── /extension        -> ExtensionLink (at most one)
        ├── /cdp/{client_id}  -> CDPClientConnection (one per client id)
        ├── /, /version, /json/version, /json/list, /status
        │
        └── Dispatcher task
                Reads a bounded queue of inbound frames (open / message /
                close / ticks) and is the only code that mutates the
                RelaySessionTable. Socket handlers just enqueue.

Command ids from each client are rewritten to relay-wide ids before they
reach the extension, responses are unicast back to the owning client with
the original id restored, and events are broadcast to every client.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from aiohttp import WSCloseCode, WSMsgType, web

from .. import __version__
from ..config import PROTOCOL_VERSION, TabRelayConfig
from ..errors import NoBridgeError, ProtocolDecodeError, RequestTimeoutError
from .auth import authorize_client_connect, authorize_extension_connect
from .connections import CDPClientConnection, ExtensionLink, RelayPeer
from .heartbeat import RelayHeartbeat
from .protocol import (
    TARGET_ATTACHED,
    TARGET_DETACHED,
    BridgeResponse,
    ClientCommand,
    ClientResponse,
    CommandPayload,
    ExtensionLog,
    ForwardCDPCommand,
    ForwardCDPEvent,
    Frame,
    Ping,
    Pong,
    RelayStatus,
    decode_client_message,
    decode_extension_message,
)
from .session_table import RelaySessionTable

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_MAX = 5.0

_EXTENSION_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "log": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class FrameKind(str, Enum):
    EXTENSION_OPEN = "extension_open"
    EXTENSION_MESSAGE = "extension_message"
    EXTENSION_CLOSED = "extension_closed"
    CLIENT_OPEN = "client_open"
    CLIENT_MESSAGE = "client_message"
    CLIENT_CLOSED = "client_closed"
    PING_TICK = "ping_tick"
    SWEEP_TICK = "sweep_tick"


@dataclass
class InboundFrame:
    """One unit of work for the dispatcher"""
    kind: FrameKind
    peer: Optional[RelayPeer] = None
    data: Optional[str] = None


class RelayServer:
    """
    CDP relay server

    Example:
        config = load_config()
        relay = RelayServer(config)
        await relay.serve_forever()
    """

    def __init__(self, config: TabRelayConfig):
        self.config = config
        self.table = RelaySessionTable()
        self.running = False

        self._inbox: asyncio.Queue[InboundFrame] | None = None
        self._dispatcher: asyncio.Task | None = None
        self._runner: web.AppRunner | None = None
        self._background: set[asyncio.Task] = set()

        self._heartbeat = RelayHeartbeat(
            config.relay.heartbeat_interval, self._queue_ping, name="extension ping"
        )
        self._sweeper: RelayHeartbeat | None = None
        if config.relay.pending_timeout:
            self._sweeper = RelayHeartbeat(
                min(config.relay.pending_timeout, SWEEP_INTERVAL_MAX),
                self._queue_sweep,
                name="pending sweep",
            )

    # ------------------------------------------------------------------
    # Application wiring
    # ------------------------------------------------------------------

    def create_app(self) -> web.Application:
        """Build the aiohttp application (HTTP endpoints + both socket endpoints)"""
        app = web.Application()
        app.router.add_get("/", self.handle_root)
        app.router.add_get("/version", self.handle_version)
        app.router.add_get("/json/version", self.handle_json_version)
        app.router.add_get("/json/list", self.handle_json_list)
        app.router.add_get("/json", self.handle_json_list)
        app.router.add_get("/status", self.handle_status)
        app.router.add_get("/extension", self.handle_extension)
        app.router.add_get("/cdp/{client_id}", self.handle_cdp_client)

        app.on_startup.append(self._on_startup)
        app.on_shutdown.append(self._on_shutdown)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_startup(self, app: web.Application) -> None:
        self._inbox = asyncio.Queue(maxsize=self.config.relay.inbox_size)
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        await self._heartbeat.start()
        if self._sweeper:
            await self._sweeper.start()

        if not self.config.extension_ids:
            logger.error("No extension ids configured. Extension connections will be rejected.")

    async def _on_shutdown(self, app: web.Application) -> None:
        peers: list[RelayPeer] = list(self.table.clients)
        if self.table.link is not None:
            peers.append(self.table.link)
        if not peers:
            return

        logger.debug(f"Closing {len(peers)} WebSocket connections...")
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    *(peer.close(WSCloseCode.GOING_AWAY, "Relay shutting down") for peer in peers),
                    return_exceptions=True,
                ),
                timeout=2.0,
            )
        except asyncio.TimeoutError:
            logger.warning("WebSocket close timed out")

    async def _on_cleanup(self, app: web.Application) -> None:
        await self._heartbeat.stop()
        if self._sweeper:
            await self._sweeper.stop()

        for task in [self._dispatcher, *self._background]:
            if task is not None:
                task.cancel()
        for task in [self._dispatcher, *self._background]:
            if task is None:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Background task ended with error: {e}")
        self._dispatcher = None
        self._background.clear()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start listening (returns once the socket is bound)"""
        app = self.create_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        self.running = True

        logger.info(f"Relay server started on {self.config.http_url}")
        logger.info(f"Extension endpoint: {self.config.extension_url()}")
        logger.info(f"CDP endpoint: ws://{self.config.host}:{self.config.port}/cdp/:clientId")

    async def serve_forever(self) -> None:
        """Start and block until stop() is called or the task is cancelled"""
        await self.start()
        try:
            while self.running:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            logger.info("Relay server task cancelled, cleaning up...")
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the relay gracefully"""
        self.running = False
        if self._runner is not None:
            runner, self._runner = self._runner, None
            await runner.cleanup()
            logger.info("Relay server stopped")

    async def drain(self) -> None:
        """Wait until every frame queued so far has been dispatched"""
        if self._inbox is not None:
            await self._inbox.join()

    # ------------------------------------------------------------------
    # HTTP endpoints
    # ------------------------------------------------------------------

    async def handle_root(self, request: web.Request) -> web.Response:
        return web.Response(text="OK")

    async def handle_version(self, request: web.Request) -> web.Response:
        return web.json_response({"version": __version__})

    async def handle_json_version(self, request: web.Request) -> web.Response:
        return web.json_response({
            "Browser": f"tabrelay/{__version__}",
            "Protocol-Version": PROTOCOL_VERSION,
            "webSocketDebuggerUrl": self.config.cdp_url(),
        })

    async def handle_json_list(self, request: web.Request) -> web.Response:
        targets = [
            target.to_listing(self.config.cdp_url(target.session_id))
            for target in self.table.targets
        ]
        return web.json_response(targets)

    async def handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.status().model_dump())

    def status(self) -> RelayStatus:
        link = self.table.link
        extension_connected = link is not None and not link.closed
        return RelayStatus(
            connected=self.running,
            extension_connected=extension_connected,
            cdp_clients_count=len(self.table.clients),
            pending_requests=self.table.pending_count,
            attached_targets=len(self.table.targets),
            relay_port=self.config.port,
        )

    # ------------------------------------------------------------------
    # WebSocket endpoints
    # ------------------------------------------------------------------

    async def handle_extension(self, request: web.Request) -> web.WebSocketResponse:
        """Handle the extension link upgrade"""
        ws = web.WebSocketResponse(max_msg_size=self.config.relay.max_message_size)
        await ws.prepare(request)

        remote_addr = request.remote or ""
        origin = request.headers.get("Origin", "")
        auth = authorize_extension_connect(remote_addr, origin, self.config.extension_ids)
        if not auth.ok:
            logger.error(
                f"Rejected extension connection from {remote_addr or 'unknown'} "
                f"(origin={origin!r}): {auth.reason}"
            )
            await ws.close(code=WSCloseCode.POLICY_VIOLATION, message=(auth.reason or "").encode())
            return ws

        link = ExtensionLink(ws, remote_addr=remote_addr, origin=origin)
        await self._pump(ws, link, FrameKind.EXTENSION_OPEN, FrameKind.EXTENSION_MESSAGE, FrameKind.EXTENSION_CLOSED)
        return ws

    async def handle_cdp_client(self, request: web.Request) -> web.WebSocketResponse:
        """Handle a CDP client upgrade on /cdp/{client_id}"""
        ws = web.WebSocketResponse(max_msg_size=self.config.relay.max_message_size)
        await ws.prepare(request)

        client_id = request.match_info["client_id"]
        remote_addr = request.remote or ""
        auth = authorize_client_connect(remote_addr, self.config.token, request.query.get("token"))
        if not auth.ok:
            logger.error(
                f"Rejected CDP connection {client_id} from {remote_addr or 'unknown'}: {auth.reason}"
            )
            await ws.close(code=WSCloseCode.POLICY_VIOLATION, message=(auth.reason or "").encode())
            return ws

        connection = CDPClientConnection(ws, client_id=client_id, remote_addr=remote_addr)
        await self._pump(ws, connection, FrameKind.CLIENT_OPEN, FrameKind.CLIENT_MESSAGE, FrameKind.CLIENT_CLOSED)
        return ws

    async def _pump(
        self,
        ws: web.WebSocketResponse,
        peer: RelayPeer,
        open_kind: FrameKind,
        message_kind: FrameKind,
        closed_kind: FrameKind,
    ) -> None:
        """Feed one socket's lifecycle and messages into the dispatcher queue"""
        await self._enqueue(InboundFrame(open_kind, peer))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._enqueue(InboundFrame(message_kind, peer, msg.data))
                elif msg.type == WSMsgType.BINARY:
                    await self._enqueue(InboundFrame(message_kind, peer, msg.data.decode("utf-8", errors="replace")))
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"{peer.label} WebSocket error: {ws.exception()}")
                    break
        finally:
            await self._enqueue(InboundFrame(closed_kind, peer))

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    async def _enqueue(self, frame: InboundFrame) -> None:
        if self._inbox is None:
            logger.warning(f"Relay not started, dropping {frame.kind.value}")
            return
        await self._inbox.put(frame)

    async def _queue_ping(self) -> None:
        await self._enqueue(InboundFrame(FrameKind.PING_TICK))

    async def _queue_sweep(self) -> None:
        await self._enqueue(InboundFrame(FrameKind.SWEEP_TICK))

    async def _dispatch_loop(self) -> None:
        assert self._inbox is not None
        while True:
            frame = await self._inbox.get()
            try:
                await self._dispatch(frame)
            except Exception as e:
                logger.error(f"Error dispatching {frame.kind.value}: {e}", exc_info=True)
            finally:
                self._inbox.task_done()

    async def _dispatch(self, frame: InboundFrame) -> None:
        kind = frame.kind
        if kind is FrameKind.EXTENSION_OPEN:
            await self._on_extension_open(frame.peer)
        elif kind is FrameKind.EXTENSION_MESSAGE:
            await self._on_extension_message(frame.peer, frame.data or "")
        elif kind is FrameKind.EXTENSION_CLOSED:
            self._on_extension_closed(frame.peer)
        elif kind is FrameKind.CLIENT_OPEN:
            self._on_client_open(frame.peer)
        elif kind is FrameKind.CLIENT_MESSAGE:
            await self._on_client_message(frame.peer, frame.data or "")
        elif kind is FrameKind.CLIENT_CLOSED:
            self._on_client_closed(frame.peer)
        elif kind is FrameKind.PING_TICK:
            await self._on_ping_tick()
        elif kind is FrameKind.SWEEP_TICK:
            await self._on_sweep_tick()
        else:
            raise ValueError(f"Unhandled frame kind: {kind}")

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -- extension -------------------------------------------------------

    async def _on_extension_open(self, link: ExtensionLink) -> None:
        previous = self.table.set_link(link)
        logger.info(f"Extension WebSocket connected (origin={link.origin})")
        if previous is not None:
            logger.warning("Replacing existing extension link")
            self._spawn(previous.close(WSCloseCode.GOING_AWAY, "Replaced by a newer extension connection"))

    def _on_extension_closed(self, link: ExtensionLink) -> None:
        if self.table.clear_link(link):
            logger.info("Extension WebSocket disconnected")
        else:
            logger.debug("Replaced extension link closed")

    async def _on_extension_message(self, link: ExtensionLink, data: str) -> None:
        if link is not self.table.link:
            logger.debug("Ignoring frame from a replaced extension link")
            return

        try:
            message = decode_extension_message(data)
        except ProtocolDecodeError as e:
            logger.warning(f"Dropping extension frame: {e}")
            return

        if isinstance(message, Pong):
            link.mark_pong()
            logger.debug("Received pong from extension")
        elif isinstance(message, ExtensionLog):
            self._log_extension(message)
        elif isinstance(message, ForwardCDPEvent):
            await self._on_extension_event(message)
        elif isinstance(message, BridgeResponse):
            await self._on_extension_response(message)
        else:
            raise ValueError(f"Unhandled extension message: {type(message).__name__}")

    def _log_extension(self, message: ExtensionLog) -> None:
        level = _EXTENSION_LOG_LEVELS.get(message.params.level.lower(), logging.INFO)
        text = " ".join(str(arg) for arg in message.params.args)
        logger.log(level, f"[EXT LOG {message.params.level}] {text}")

    async def _on_extension_event(self, event: ForwardCDPEvent) -> None:
        payload = event.params

        if payload.method == TARGET_ATTACHED and payload.session_id:
            target_info = payload.params.get("targetInfo")
            self.table.upsert_target(
                payload.session_id,
                target_info if isinstance(target_info, dict) else None,
            )
            logger.info(f"Target attached: {payload.session_id}")
        elif payload.method == TARGET_DETACHED:
            detached = payload.params.get("sessionId") or payload.session_id
            if detached and self.table.remove_target(detached):
                logger.info(f"Target detached: {detached}")

        await self._broadcast(event.to_client_event())

    async def _on_extension_response(self, response: BridgeResponse) -> None:
        pending = self.table.resolve_pending(response.id)
        if pending is None:
            logger.warning(f"Received response for unknown request id: {response.id}")
            return

        reply = ClientResponse(
            id=pending.client_message_id,
            session_id=pending.session_id,
            result=response.result,
            error=response.error,
        )
        await self._send_to_client(pending.client_id, reply)

    # -- clients ---------------------------------------------------------

    def _on_client_open(self, connection: CDPClientConnection) -> None:
        previous = self.table.add_client(connection.client_id, connection)
        logger.info(f"CDP WebSocket connected: {connection.client_id}")
        if previous is not None:
            logger.warning(f"Client id {connection.client_id} reconnected, closing the older socket")
            self._spawn(previous.close(WSCloseCode.GOING_AWAY, "Replaced by a newer connection"))

    def _on_client_closed(self, connection: CDPClientConnection) -> None:
        if self.table.remove_client(connection.client_id, connection):
            logger.info(f"CDP WebSocket disconnected: {connection.client_id}")

    async def _on_client_message(self, connection: CDPClientConnection, data: str) -> None:
        if self.table.get_client(connection.client_id) is not connection:
            logger.debug(f"Ignoring frame from replaced client socket {connection.client_id}")
            return

        try:
            command = decode_client_message(data)
        except ProtocolDecodeError as e:
            logger.warning(f"Dropping frame from {connection.client_id}: {e}")
            return

        await self._forward_command(connection, command)

    async def _forward_command(self, connection: CDPClientConnection, command: ClientCommand) -> None:
        link = self.table.link
        if link is None or link.closed:
            error = NoBridgeError()
            logger.error(f"{error}, cannot forward {command.method} from {connection.client_id}")
            if self.config.relay.reply_without_extension:
                await connection.send_frame(
                    ClientResponse(id=command.id, session_id=command.session_id, error=str(error))
                )
            return

        relay_id = self.table.register_pending(connection.client_id, command.id, command.session_id)
        envelope = ForwardCDPCommand(
            id=relay_id,
            params=CommandPayload(
                method=command.method,
                session_id=command.session_id,
                params=command.params,
            ),
        )
        if not await link.send_frame(envelope):
            self.table.resolve_pending(relay_id)
            logger.error(f"Failed to forward {command.method} (relay id {relay_id}) to extension")

    async def _send_to_client(self, client_id: str, frame: Frame) -> bool:
        connection = self.table.get_client(client_id)
        if connection is None or connection.closed:
            logger.debug(f"Dropping message for disconnected client {client_id}")
            return False
        return await connection.send_frame(frame)

    async def _broadcast(self, frame: Frame) -> None:
        message = frame.to_wire()
        clients = [c for c in self.table.clients if not c.closed]
        if clients:
            await asyncio.gather(*(client.send_json(message) for client in clients))

    # -- ticks -----------------------------------------------------------

    async def _on_ping_tick(self) -> None:
        link = self.table.link
        if link is not None and not link.closed:
            await link.send_frame(Ping())

    async def _on_sweep_tick(self) -> None:
        timeout = self.config.relay.pending_timeout
        if not timeout:
            return
        for relay_id, pending in self.table.expire_pending(timeout):
            error = RequestTimeoutError()
            logger.warning(
                f"Request {relay_id} ({pending.client_id}#{pending.client_message_id}) "
                f"expired after {timeout}s"
            )
            await self._send_to_client(
                pending.client_id,
                ClientResponse(
                    id=pending.client_message_id,
                    session_id=pending.session_id,
                    error=str(error),
                ),
            )


__all__ = [
    "FrameKind",
    "InboundFrame",
    "RelayServer",
]
