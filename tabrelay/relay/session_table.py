"""
Relay session table.

All mutable relay state in one place:
- the single extension link slot
- connected CDP clients
- pending requests (relay id -> owning client and original id)
- attached targets (session id -> cached target metadata)

The table is only mutated from the relay's dispatcher task, so it holds no
locks. Every mutation is an explicit method.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """One command in flight between the relay and the extension"""
    client_id: str
    client_message_id: int
    session_id: Optional[str] = None
    created_at: float = field(default_factory=time.monotonic)


@dataclass
class AttachedTarget:
    """A live CDP session announced via Target.attachedToTarget"""
    session_id: str
    tab_id: Any = None
    target_info: dict[str, Any] = field(default_factory=dict)

    def to_listing(self, websocket_url: str) -> dict[str, Any]:
        """Entry for the /json/list discovery endpoint"""
        info = self.target_info
        return {
            "id": info.get("targetId") or self.session_id,
            "tabId": self.tab_id,
            "type": info.get("type") or "page",
            "title": info.get("title") or "",
            "url": info.get("url") or "",
            "webSocketDebuggerUrl": websocket_url,
            "sessionId": self.session_id,
        }


class RelaySessionTable:
    """Relay-wide bookkeeping for links, clients, correlations and sessions"""

    def __init__(self):
        self._link: Any = None
        self._clients: dict[str, Any] = {}
        self._pending: dict[int, PendingRequest] = {}
        self._targets: dict[str, AttachedTarget] = {}
        self._next_request_id = 1

    # ------------------------------------------------------------------
    # Extension link
    # ------------------------------------------------------------------

    @property
    def link(self) -> Any:
        return self._link

    def set_link(self, link: Any) -> Any:
        """Install the extension link; returns the link it replaced (if any).

        Replacing a link destroys the old one's sessions and correlations.
        """
        previous = self._link
        if previous is not None and previous is not link:
            self._reset_link_state()
        self._link = link
        return previous if previous is not link else None

    def clear_link(self, link: Any = None) -> bool:
        """Drop the extension link (only if `link` is the current one, when given).

        Clears every attached target and pending request: their responses
        can no longer arrive.
        """
        if self._link is None:
            return False
        if link is not None and link is not self._link:
            return False
        self._link = None
        self._reset_link_state()
        return True

    def _reset_link_state(self) -> None:
        if self._targets or self._pending:
            logger.info(
                f"Clearing {len(self._targets)} targets and "
                f"{len(self._pending)} pending requests"
            )
        self._targets.clear()
        self._pending.clear()

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    @property
    def clients(self) -> list[Any]:
        return list(self._clients.values())

    def get_client(self, client_id: str) -> Any:
        return self._clients.get(client_id)

    def add_client(self, client_id: str, connection: Any) -> Any:
        """Register a client connection; returns the connection it replaced."""
        previous = self._clients.get(client_id)
        self._clients[client_id] = connection
        return previous if previous is not connection else None

    def remove_client(self, client_id: str, connection: Any = None) -> bool:
        """Unregister a client. Its pending requests are left in place."""
        current = self._clients.get(client_id)
        if current is None:
            return False
        if connection is not None and current is not connection:
            return False
        del self._clients[client_id]
        return True

    # ------------------------------------------------------------------
    # Pending requests
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def register_pending(
        self,
        client_id: str,
        client_message_id: int,
        session_id: Optional[str] = None,
    ) -> int:
        """Allocate a relay request id and remember who asked."""
        relay_id = self._next_request_id
        self._next_request_id += 1
        self._pending[relay_id] = PendingRequest(
            client_id=client_id,
            client_message_id=client_message_id,
            session_id=session_id,
        )
        return relay_id

    def resolve_pending(self, relay_id: int) -> Optional[PendingRequest]:
        """Remove and return the pending request for `relay_id` (None if unknown)."""
        return self._pending.pop(relay_id, None)

    def get_pending(self, relay_id: int) -> Optional[PendingRequest]:
        return self._pending.get(relay_id)

    def expire_pending(self, max_age: float, now: float | None = None) -> list[tuple[int, PendingRequest]]:
        """Remove and return requests older than `max_age` seconds."""
        now = time.monotonic() if now is None else now
        expired = [
            (relay_id, pending)
            for relay_id, pending in self._pending.items()
            if now - pending.created_at >= max_age
        ]
        for relay_id, _ in expired:
            del self._pending[relay_id]
        return expired

    # ------------------------------------------------------------------
    # Attached targets
    # ------------------------------------------------------------------

    @property
    def targets(self) -> list[AttachedTarget]:
        return list(self._targets.values())

    def get_target(self, session_id: str) -> Optional[AttachedTarget]:
        return self._targets.get(session_id)

    def upsert_target(
        self,
        session_id: str,
        target_info: dict[str, Any] | None = None,
        tab_id: Any = None,
    ) -> AttachedTarget:
        info = dict(target_info or {})
        if tab_id is None:
            tab_id = info.get("tabId")
        target = AttachedTarget(session_id=session_id, tab_id=tab_id, target_info=info)
        self._targets[session_id] = target
        return target

    def remove_target(self, session_id: str) -> Optional[AttachedTarget]:
        return self._targets.pop(session_id, None)


__all__ = [
    "AttachedTarget",
    "PendingRequest",
    "RelaySessionTable",
]
