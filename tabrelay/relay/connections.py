"""Socket wrappers for the relay's two kinds of peers."""
from __future__ import annotations

import json
import logging
import time
from typing import Any

from aiohttp import WSCloseCode, web

from .protocol import Frame

logger = logging.getLogger(__name__)


class RelayPeer:
    """A single accepted WebSocket (aiohttp WebSocketResponse)"""

    label = "peer"

    def __init__(self, websocket: web.WebSocketResponse, remote_addr: str = ""):
        self.websocket = websocket
        self.remote_addr = remote_addr
        self.connected_at = time.time()

    @property
    def closed(self) -> bool:
        return self.websocket.closed

    async def send_json(self, message: dict[str, Any]) -> bool:
        """Send one JSON frame; returns False when the socket is gone."""
        if self.websocket.closed:
            logger.debug(f"Skipping send to closed {self.label}")
            return False
        try:
            await self.websocket.send_str(json.dumps(message))
            return True
        except Exception as e:
            logger.error(f"Failed to send to {self.label}: {e}")
            return False

    async def send_frame(self, frame: Frame) -> bool:
        return await self.send_json(frame.to_wire())

    async def close(self, code: int = WSCloseCode.GOING_AWAY, reason: str = "") -> None:
        if self.websocket.closed:
            return
        try:
            await self.websocket.close(code=code, message=reason.encode())
        except Exception as e:
            logger.debug(f"Error closing {self.label}: {e}")


class ExtensionLink(RelayPeer):
    """The relay's single channel to the browser-side bridge"""

    label = "extension"

    def __init__(self, websocket: web.WebSocketResponse, remote_addr: str = "", origin: str = ""):
        super().__init__(websocket, remote_addr)
        self.origin = origin
        self.last_pong_at: float | None = None

    def mark_pong(self) -> None:
        self.last_pong_at = time.time()


class CDPClientConnection(RelayPeer):
    """One connected CDP client, keyed by the client id from its URL path"""

    def __init__(self, websocket: web.WebSocketResponse, client_id: str, remote_addr: str = ""):
        super().__init__(websocket, remote_addr)
        self.client_id = client_id

    @property
    def label(self) -> str:
        return f"client {self.client_id}"


__all__ = [
    "CDPClientConnection",
    "ExtensionLink",
    "RelayPeer",
]
