"""Client connector: the automation-facing side of the relay."""

from .connector import ClientConnector, ConnectionState, OperationResult, RelayProcess
from .page import PageSession, build_accessibility_tree

__all__ = [
    "ClientConnector",
    "ConnectionState",
    "OperationResult",
    "PageSession",
    "RelayProcess",
    "build_accessibility_tree",
]
