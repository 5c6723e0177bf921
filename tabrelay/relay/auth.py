from __future__ import annotations

import hmac
import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

_EXTENSION_ORIGIN_RE = re.compile(r"^chrome-extension://([^/]+)")


class AuthMethod(Enum):
    EXTENSION_ORIGIN = "EXTENSION_ORIGIN"
    TOKEN = "TOKEN"
    LOCAL_DIRECT = "LOCAL_DIRECT"


@dataclass
class AuthResult:
    ok: bool
    method: AuthMethod | None = None
    reason: str | None = None


def safe_equal(a: str | None, b: str | None) -> bool:
    """Timing-safe comparison for strings (handles None)."""
    if a is None or b is None:
        return False
    try:
        return hmac.compare_digest(str(a).encode(), str(b).encode())
    except Exception:
        return False


def is_loopback_address(addr: str | None) -> bool:
    """Return True when `addr` is a loopback address (IPv4/IPv6)."""
    if not addr:
        return False
    try:
        ip = ipaddress.ip_address(addr)
        if ip.is_loopback:
            return True
        # IPv4-mapped IPv6 like ::ffff:127.0.0.1
        mapped = getattr(ip, "ipv4_mapped", None)
        return bool(mapped and mapped.is_loopback)
    except ValueError:
        return False


def extension_id_from_origin(origin: str | None) -> str | None:
    """Extract the extension id from a ``chrome-extension://<id>`` origin."""
    if not origin:
        return None
    match = _EXTENSION_ORIGIN_RE.match(origin)
    return match.group(1) if match else None


def authorize_extension_connect(
    remote_addr: str | None,
    origin: str | None,
    allowed_extension_ids: Iterable[str],
) -> AuthResult:
    """Authorize the single extension link.

    Requires a loopback peer and an allow-listed extension origin. An empty
    allow-list rejects everything.
    """
    if not is_loopback_address(remote_addr):
        return AuthResult(ok=False, reason="Connection only allowed from localhost")

    allowed = set(allowed_extension_ids)
    if not allowed:
        return AuthResult(ok=False, method=AuthMethod.EXTENSION_ORIGIN, reason="No extension ids configured")

    extension_id = extension_id_from_origin(origin)
    if extension_id is None or extension_id not in allowed:
        return AuthResult(ok=False, method=AuthMethod.EXTENSION_ORIGIN, reason="Invalid origin")

    return AuthResult(ok=True, method=AuthMethod.EXTENSION_ORIGIN)


def authorize_client_connect(
    remote_addr: str | None,
    config_token: str | None,
    request_token: str | None,
) -> AuthResult:
    """Authorize a CDP client: loopback peer, plus a matching token when one is configured."""
    if not is_loopback_address(remote_addr):
        return AuthResult(ok=False, reason="Connection only allowed from localhost")

    if not config_token:
        return AuthResult(ok=True, method=AuthMethod.LOCAL_DIRECT)

    if request_token is None:
        return AuthResult(ok=False, method=AuthMethod.TOKEN, reason="Invalid token")
    if safe_equal(config_token, request_token):
        return AuthResult(ok=True, method=AuthMethod.TOKEN)
    return AuthResult(ok=False, method=AuthMethod.TOKEN, reason="Invalid token")


__all__ = [
    "AuthMethod",
    "AuthResult",
    "authorize_client_connect",
    "authorize_extension_connect",
    "extension_id_from_origin",
    "is_loopback_address",
    "safe_equal",
]
