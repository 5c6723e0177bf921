"""
CDP WebSocket client.

One socket, many in-flight commands: each command gets a future keyed by
its message id, and a single listener task resolves them and fans events
out to registered listeners. Used by the client connector (against the
relay) and by the bridge's remote-debugging backend (against Chrome).
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect

from ..errors import (
    CommandExecutionError,
    ConnectionClosedError,
    ConnectionSetupError,
    RequestTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_SIZE = 64 * 1024 * 1024


@dataclass
class CDPEvent:
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None


EventListener = Callable[[CDPEvent], None]


@dataclass
class _EventWaiter:
    method: str
    session_id: Optional[str]
    future: asyncio.Future


class CDPConnection:
    """
    Minimal CDP client over a single WebSocket

    Example:
        conn = CDPConnection("ws://127.0.0.1:19988/cdp/mcp-client")
        await conn.connect()
        result = await conn.send("Runtime.evaluate", {"expression": "1+1"}, session_id=sid)
    """

    def __init__(
        self,
        url: str,
        *,
        origin: str | None = None,
        open_timeout: float = 30.0,
        command_timeout: float | None = 30.0,
        max_size: int = DEFAULT_MAX_MESSAGE_SIZE,
        name: str = "cdp",
    ):
        self.url = url
        self.origin = origin
        self.open_timeout = open_timeout
        self.command_timeout = command_timeout
        self.max_size = max_size
        self.name = name

        self._ws: ClientConnection | None = None
        self._listen_task: asyncio.Task | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, asyncio.Future]] = {}
        self._listeners: list[tuple[Optional[str], EventListener]] = []
        self._waiters: list[_EventWaiter] = []
        self._close_callbacks: list[Callable[[], None]] = []
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    async def connect(self) -> None:
        """Open the socket and start the listener task"""
        logger.debug(f"[{self.name}] Connecting to {self.url}")
        try:
            self._ws = await connect(
                self.url,
                origin=self.origin,
                open_timeout=self.open_timeout,
                max_size=self.max_size,
            )
        except Exception as e:
            raise ConnectionSetupError(f"Failed to connect to {self.url}: {e}") from e

        self._closed = False
        self._listen_task = asyncio.create_task(self._listen())
        logger.debug(f"[{self.name}] Connected")

    async def close(self) -> None:
        """Close the socket; pending commands fail with ConnectionClosedError"""
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"[{self.name}] Error closing socket: {e}")

        if self._listen_task is not None:
            task, self._listen_task = self._listen_task, None
            if task is not asyncio.current_task():
                try:
                    await asyncio.wait_for(task, timeout=5.0)
                except asyncio.TimeoutError:
                    task.cancel()
                except asyncio.CancelledError:
                    pass

        self._mark_closed("Connection closed")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send one command and wait for its result"""
        if self._closed or self._ws is None:
            raise ConnectionClosedError(f"Cannot send {method}: connection closed")

        msg_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = (method, future)

        message: dict[str, Any] = {"id": msg_id, "method": method, "params": params or {}}
        if session_id is not None:
            message["sessionId"] = session_id

        try:
            await self._ws.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed as e:
            self._pending.pop(msg_id, None)
            raise ConnectionClosedError(f"Cannot send {method}: {e}") from e

        wait = self.command_timeout if timeout is None else timeout
        try:
            if wait:
                return await asyncio.wait_for(future, timeout=wait)
            return await future
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(f"{method} timed out after {wait}s") from e
        finally:
            self._pending.pop(msg_id, None)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def add_listener(self, listener: EventListener, method: str | None = None) -> Callable[[], None]:
        """Register an event listener (optionally for one method); returns a remover"""
        entry = (method, listener)
        self._listeners.append(entry)

        def remove() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return remove

    def expect_event(self, method: str, session_id: str | None = None) -> asyncio.Future:
        """Future resolved by the next `method` event (from `session_id` when given).

        Register before sending the command that triggers the event.
        """
        future = asyncio.get_running_loop().create_future()
        if self._closed:
            future.set_exception(ConnectionClosedError(f"Cannot wait for {method}: connection closed"))
            return future
        self._waiters.append(_EventWaiter(method, session_id, future))
        return future

    def on_close(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Listener
    # ------------------------------------------------------------------

    async def _listen(self) -> None:
        assert self._ws is not None
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except ValueError:
                    logger.warning(f"[{self.name}] Ignoring non-JSON frame")
                    continue
                if not isinstance(data, dict):
                    continue

                if "id" in data:
                    self._handle_response(data)
                elif "method" in data:
                    self._handle_event(data)
        except websockets.exceptions.ConnectionClosed as e:
            logger.debug(f"[{self.name}] Socket closed: {e}")
        except Exception as e:
            logger.error(f"[{self.name}] Error in listen loop: {e}", exc_info=True)
        finally:
            self._mark_closed("Connection closed")

    def _handle_response(self, data: dict[str, Any]) -> None:
        entry = self._pending.get(data.get("id"))
        if entry is None:
            logger.debug(f"[{self.name}] Response for unknown id {data.get('id')}")
            return

        method, future = entry
        if future.done():
            return

        error = data.get("error")
        if error is not None:
            message = error.get("message") if isinstance(error, dict) else str(error)
            future.set_exception(CommandExecutionError(message or "Unknown CDP error", method=method))
        else:
            result = data.get("result")
            future.set_result(result if isinstance(result, dict) else {})

    def _handle_event(self, data: dict[str, Any]) -> None:
        params = data.get("params")
        event = CDPEvent(
            method=data["method"],
            params=params if isinstance(params, dict) else {},
            session_id=data.get("sessionId"),
        )

        remaining = []
        for waiter in self._waiters:
            if waiter.future.done():
                continue
            if waiter.method == event.method and (
                waiter.session_id is None or waiter.session_id == event.session_id
            ):
                waiter.future.set_result(event)
            else:
                remaining.append(waiter)
        self._waiters = remaining

        for method, listener in list(self._listeners):
            if method is not None and method != event.method:
                continue
            try:
                listener(event)
            except Exception as e:
                logger.error(f"[{self.name}] Event listener error for {event.method}: {e}", exc_info=True)

    def _mark_closed(self, reason: str) -> None:
        if self._closed and not self._pending and not self._waiters:
            return
        was_open = not self._closed
        self._closed = True

        for method, future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionClosedError(f"{reason} while waiting for {method}"))
        self._pending.clear()

        for waiter in self._waiters:
            if not waiter.future.done():
                waiter.future.set_exception(ConnectionClosedError(f"{reason} while waiting for {waiter.method}"))
        self._waiters.clear()

        if was_open:
            for callback in list(self._close_callbacks):
                try:
                    callback()
                except Exception as e:
                    logger.error(f"[{self.name}] Close callback error: {e}")


__all__ = [
    "CDPConnection",
    "CDPEvent",
    "EventListener",
]
