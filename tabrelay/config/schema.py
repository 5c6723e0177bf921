"""
Configuration schema

Pydantic models for relay, bridge and connector settings. The shared
fields (port, token, allow-list) live at the top level because all three
components must agree on them.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_RELAY_PORT = 19988
DEFAULT_CLIENT_ID = "mcp-client"
PROTOCOL_VERSION = "1.3"


class RelaySettings(BaseModel):
    """Relay server behaviour"""
    heartbeat_interval: float = Field(30.0, gt=0, description="Seconds between pings to the extension")
    inbox_size: int = Field(1024, gt=0, description="Bounded inbound frame queue")
    max_message_size: int = Field(64 * 1024 * 1024, gt=0)
    reply_without_extension: bool = Field(
        False, description="Answer commands with an error when no extension is linked"
    )
    pending_timeout: Optional[float] = Field(
        None, gt=0, description="Seconds before an unanswered command is failed (unset: never)"
    )


class BridgeSettings(BaseModel):
    """Browser-side bridge behaviour"""
    extension_id: str = "tabrelay-bridge"
    probe_attempts: int = Field(30, gt=0)
    probe_interval: float = Field(1.0, ge=0)
    probe_timeout: float = Field(2.0, gt=0)
    open_timeout: float = Field(5.0, gt=0)
    maintain_interval: float = Field(5.0, gt=0)
    chrome_host: str = "127.0.0.1"
    chrome_port: int = Field(9222, gt=0, lt=65536)
    attach_active_tab: bool = False


class ConnectorSettings(BaseModel):
    """Automation-facing client connector behaviour"""
    client_id: str = DEFAULT_CLIENT_ID
    probe_timeout: float = Field(2.0, gt=0)
    launch_relay: bool = True
    launch_attempts: int = Field(10, gt=0)
    launch_interval: float = Field(1.0, ge=0)
    open_timeout: float = Field(30.0, gt=0)
    command_timeout: float = Field(30.0, gt=0)
    liveness_timeout: float = Field(5.0, gt=0)
    navigation_timeout: float = Field(30.0, gt=0)


class TabRelayConfig(BaseModel):
    """Complete tabrelay configuration"""
    host: str = "127.0.0.1"
    port: int = Field(DEFAULT_RELAY_PORT, gt=0, lt=65536)
    token: Optional[str] = None
    extension_ids: list[str] = Field(default_factory=list)
    log_level: str = "INFO"

    relay: RelaySettings = Field(default_factory=RelaySettings)
    bridge: BridgeSettings = Field(default_factory=BridgeSettings)
    connector: ConnectorSettings = Field(default_factory=ConnectorSettings)

    @field_validator("extension_ids", mode="before")
    @classmethod
    def split_extension_ids(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return parse_extension_ids(v)
        return [str(item).strip() for item in v if str(item).strip()]

    @field_validator("token", mode="before")
    @classmethod
    def empty_token_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def http_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def cdp_url(self, client_id: str | None = None) -> str:
        return f"ws://{self.host}:{self.port}/cdp/{client_id or 'default'}"

    def extension_url(self) -> str:
        return f"ws://{self.host}:{self.port}/extension"


def parse_extension_ids(raw: str | None) -> list[str]:
    """Split a comma-separated allow-list, dropping blanks."""
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


__all__ = [
    "DEFAULT_CLIENT_ID",
    "DEFAULT_RELAY_PORT",
    "PROTOCOL_VERSION",
    "RelaySettings",
    "BridgeSettings",
    "ConnectorSettings",
    "TabRelayConfig",
    "parse_extension_ids",
]
