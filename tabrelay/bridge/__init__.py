"""Bridge: the browser-side half, owning debugger attachments."""

from .bridge import Bridge, TabAttachment
from .debugger import (
    DebuggerBackend,
    DebuggerSubscription,
    RemoteDebuggingBackend,
    TabInfo,
)

__all__ = [
    "Bridge",
    "DebuggerBackend",
    "DebuggerSubscription",
    "RemoteDebuggingBackend",
    "TabAttachment",
    "TabInfo",
]
