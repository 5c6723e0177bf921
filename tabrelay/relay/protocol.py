"""
Relay wire protocol definitions.

Defines the frames exchanged between:
- CDP clients and the relay (commands in, responses/events out)
- the relay and the browser-side bridge (command envelopes, responses,
  event envelopes, keepalive)

Each direction is a closed set of pydantic models. The ``decode_*``
functions are the only way raw text enters the system; anything that does
not match a known variant raises ProtocolDecodeError.
"""
from __future__ import annotations

import json
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator

from ..errors import ProtocolDecodeError

FORWARD_CDP_COMMAND = "forwardCDPCommand"
FORWARD_CDP_EVENT = "forwardCDPEvent"
PING = "ping"
PONG = "pong"
LOG = "log"

TARGET_ATTACHED = "Target.attachedToTarget"
TARGET_DETACHED = "Target.detachedFromTarget"


class Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        raise NotImplementedError

    def to_json(self) -> str:
        return json.dumps(self.to_wire())


# ============================================================================
# Client <-> Relay
# ============================================================================

class ClientCommand(Frame):
    """CDP command from a client, plain or unwrapped from a forwardCDPCommand envelope"""
    id: StrictInt
    method: str = Field(..., min_length=1)
    session_id: Optional[str] = Field(None, alias="sessionId")
    params: Optional[dict[str, Any]] = None

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"id": self.id, "method": self.method}
        if self.session_id is not None:
            message["sessionId"] = self.session_id
        if self.params is not None:
            message["params"] = self.params
        return message


class ClientResponse(Frame):
    """Result or error for one client command, addressed by the client's own id"""
    id: StrictInt
    session_id: Optional[str] = Field(None, alias="sessionId")
    result: Any = None
    error: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"id": self.id}
        if self.session_id is not None:
            message["sessionId"] = self.session_id
        if self.error:
            message["error"] = {"message": self.error}
        else:
            message["result"] = {} if self.result is None else self.result
        return message


class ClientEvent(Frame):
    """CDP event broadcast to every client"""
    method: str
    params: dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = Field(None, alias="sessionId")

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"method": self.method, "params": self.params}
        if self.session_id is not None:
            message["sessionId"] = self.session_id
        return message


# ============================================================================
# Relay -> Bridge
# ============================================================================

class CommandPayload(Frame):
    method: str = Field(..., min_length=1)
    session_id: Optional[str] = Field(None, alias="sessionId")
    params: Optional[dict[str, Any]] = None


class ForwardCDPCommand(Frame):
    """Command envelope carrying a relay-assigned id"""
    id: StrictInt
    method: Literal["forwardCDPCommand"] = FORWARD_CDP_COMMAND
    params: CommandPayload

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"method": self.params.method}
        if self.params.session_id is not None:
            payload["sessionId"] = self.params.session_id
        if self.params.params is not None:
            payload["params"] = self.params.params
        return {"id": self.id, "method": FORWARD_CDP_COMMAND, "params": payload}


class Ping(Frame):
    """Heartbeat from relay"""
    method: Literal["ping"] = PING

    def to_wire(self) -> dict[str, Any]:
        return {"method": PING}


RelayToBridge = Union[ForwardCDPCommand, Ping]


# ============================================================================
# Bridge -> Relay
# ============================================================================

class Pong(Frame):
    """Heartbeat response from extension"""
    method: Literal["pong"] = PONG

    def to_wire(self) -> dict[str, Any]:
        return {"method": PONG}


class LogParams(Frame):
    level: str = "info"
    args: list[Any] = Field(default_factory=list)


class ExtensionLog(Frame):
    """Log line shipped from the extension to the relay's log"""
    method: Literal["log"] = LOG
    params: LogParams = Field(default_factory=LogParams)

    def to_wire(self) -> dict[str, Any]:
        return {"method": LOG, "params": {"level": self.params.level, "args": self.params.args}}


class EventPayload(Frame):
    method: str = Field(..., min_length=1)
    session_id: Optional[str] = Field(None, alias="sessionId")
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("params", mode="before")
    @classmethod
    def null_params_is_empty(cls, v):
        return {} if v is None else v


class ForwardCDPEvent(Frame):
    """Native debugger event wrapped by the extension"""
    method: Literal["forwardCDPEvent"] = FORWARD_CDP_EVENT
    params: EventPayload

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"method": self.params.method, "params": self.params.params}
        if self.params.session_id is not None:
            payload["sessionId"] = self.params.session_id
        return {"method": FORWARD_CDP_EVENT, "params": payload}

    def to_client_event(self) -> ClientEvent:
        return ClientEvent(
            method=self.params.method,
            params=self.params.params,
            session_id=self.params.session_id,
        )


class BridgeResponse(Frame):
    """Response from extension for a relay-assigned id"""
    id: StrictInt
    result: Any = None
    error: Optional[str] = None

    @field_validator("error", mode="before")
    @classmethod
    def normalize_error(cls, v):
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, dict):
            return str(v.get("message") or v)
        return str(v)

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"id": self.id}
        if self.error:
            message["error"] = self.error
        else:
            message["result"] = self.result
        return message


BridgeToRelay = Union[Pong, ExtensionLog, ForwardCDPEvent, BridgeResponse]


class RelayStatus(BaseModel):
    """Relay server status"""
    connected: bool
    extension_connected: bool
    cdp_clients_count: int
    pending_requests: int = 0
    attached_targets: int = 0
    relay_port: int | None = None


# ============================================================================
# Decoding
# ============================================================================

def _load_object(raw: str | bytes) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolDecodeError(f"Invalid JSON: {e}", raw=raw) from e
    if not isinstance(data, dict):
        raise ProtocolDecodeError("Frame is not a JSON object", raw=raw)
    return data


def _validate(model: type[Frame], data: dict[str, Any]) -> Frame:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ProtocolDecodeError(
            f"Invalid {model.__name__}: {e.error_count()} validation error(s)", raw=data
        ) from e


def decode_client_message(raw: str | bytes) -> ClientCommand:
    """Decode a frame sent by a CDP client."""
    data = _load_object(raw)

    if data.get("method") == FORWARD_CDP_COMMAND:
        params = data.get("params")
        if not isinstance(params, dict):
            raise ProtocolDecodeError("forwardCDPCommand without params", raw=data)
        return _validate(ClientCommand, {
            "id": data.get("id"),
            "method": params.get("method"),
            "sessionId": params.get("sessionId"),
            "params": params.get("params"),
        })

    return _validate(ClientCommand, data)


def decode_extension_message(raw: str | bytes) -> BridgeToRelay:
    """Decode a frame sent by the extension bridge."""
    data = _load_object(raw)
    method = data.get("method")

    if method == PONG:
        return Pong()
    if method == LOG:
        return _validate(ExtensionLog, data)
    if method == FORWARD_CDP_EVENT:
        return _validate(ForwardCDPEvent, data)
    if method is not None:
        raise ProtocolDecodeError(f"Unknown extension method: {method}", raw=data)
    if "id" in data:
        return _validate(BridgeResponse, data)

    raise ProtocolDecodeError("Extension frame has neither method nor id", raw=data)


def decode_relay_message(raw: str | bytes) -> RelayToBridge:
    """Decode a frame sent by the relay to the bridge."""
    data = _load_object(raw)
    method = data.get("method")

    if method == PING:
        return Ping()
    if method == FORWARD_CDP_COMMAND:
        return _validate(ForwardCDPCommand, data)

    raise ProtocolDecodeError(f"Unknown relay method: {method}", raw=data)


__all__ = [
    "FORWARD_CDP_COMMAND",
    "FORWARD_CDP_EVENT",
    "LOG",
    "PING",
    "PONG",
    "TARGET_ATTACHED",
    "TARGET_DETACHED",
    "BridgeResponse",
    "BridgeToRelay",
    "ClientCommand",
    "ClientEvent",
    "ClientResponse",
    "CommandPayload",
    "EventPayload",
    "ExtensionLog",
    "ForwardCDPCommand",
    "ForwardCDPEvent",
    "LogParams",
    "Ping",
    "Pong",
    "RelayStatus",
    "RelayToBridge",
    "decode_client_message",
    "decode_extension_message",
    "decode_relay_message",
]
