"""CDP WebSocket client shared by the bridge backend and the client connector."""

from .connection import CDPConnection, CDPEvent, EventListener

__all__ = ["CDPConnection", "CDPEvent", "EventListener"]
