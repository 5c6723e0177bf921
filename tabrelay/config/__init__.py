"""Configuration for tabrelay."""

from __future__ import annotations

from .loader import invalidate_config_cache, load_config
from .schema import (
    DEFAULT_CLIENT_ID,
    DEFAULT_RELAY_PORT,
    PROTOCOL_VERSION,
    BridgeSettings,
    ConnectorSettings,
    RelaySettings,
    TabRelayConfig,
)

__all__ = [
    "DEFAULT_CLIENT_ID",
    "DEFAULT_RELAY_PORT",
    "PROTOCOL_VERSION",
    "BridgeSettings",
    "ConnectorSettings",
    "RelaySettings",
    "TabRelayConfig",
    "invalidate_config_cache",
    "load_config",
]
