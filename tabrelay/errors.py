from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    NO_EXTENSION = "NO_EXTENSION"
    NO_TARGET = "NO_TARGET"
    COMMAND_FAILED = "COMMAND_FAILED"
    CONNECTION_SETUP = "CONNECTION_SETUP"
    CONNECTION_CLOSED = "CONNECTION_CLOSED"
    PROTOCOL = "PROTOCOL"
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"


class RelayError(Exception):
    def __init__(self, message: str, error_code: ErrorCode, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_code.value,
            "message": str(self),
            "details": self.details,
        }


class NoBridgeError(RelayError):
    def __init__(self, message: str | None = None):
        msg = message or "Extension not connected"
        super().__init__(msg, ErrorCode.NO_EXTENSION)


class NoTargetError(RelayError):
    def __init__(self, message: str | None = None):
        msg = message or "No target tab attached"
        super().__init__(msg, ErrorCode.NO_TARGET)


class CommandExecutionError(RelayError):
    def __init__(self, message: str | None = None, method: str | None = None):
        msg = message or "Command failed"
        super().__init__(msg, ErrorCode.COMMAND_FAILED, {"method": method} if method else None)
        self.method = method


class ConnectionSetupError(RelayError):
    def __init__(self, message: str | None = None):
        msg = message or "Connection setup failed"
        super().__init__(msg, ErrorCode.CONNECTION_SETUP)


class ConnectionClosedError(RelayError):
    def __init__(self, message: str | None = None):
        msg = message or "Connection closed"
        super().__init__(msg, ErrorCode.CONNECTION_CLOSED)


class ProtocolDecodeError(RelayError):
    def __init__(self, message: str | None = None, raw: Any = None):
        msg = message or "Unrecognized message"
        super().__init__(msg, ErrorCode.PROTOCOL)
        self.raw = raw


class RequestTimeoutError(RelayError):
    def __init__(self, message: str | None = None):
        msg = message or "Request timed out"
        super().__init__(msg, ErrorCode.REQUEST_TIMEOUT)


__all__ = [
    "ErrorCode",
    "RelayError",
    "NoBridgeError",
    "NoTargetError",
    "CommandExecutionError",
    "ConnectionSetupError",
    "ConnectionClosedError",
    "ProtocolDecodeError",
    "RequestTimeoutError",
]
