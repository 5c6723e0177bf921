"""Relay: the loopback switchboard between CDP clients and the extension bridge."""

from .protocol import (
    ClientCommand,
    ClientEvent,
    ClientResponse,
    ForwardCDPCommand,
    ForwardCDPEvent,
    RelayStatus,
    decode_client_message,
    decode_extension_message,
    decode_relay_message,
)
from .server import RelayServer
from .session_table import RelaySessionTable

__all__ = [
    "ClientCommand",
    "ClientEvent",
    "ClientResponse",
    "ForwardCDPCommand",
    "ForwardCDPEvent",
    "RelayServer",
    "RelaySessionTable",
    "RelayStatus",
    "decode_client_message",
    "decode_extension_message",
    "decode_relay_message",
]
