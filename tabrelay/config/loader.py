"""Configuration loader for tabrelay.

Loads configuration from an optional JSON5 file and environment variables.

- ${ENV_VAR} substitution inside file values
- TABRELAY_* environment variables override file values
- Result is cached per process (invalidate_config_cache() resets it)
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Mapping, Optional

import json5

from .schema import TabRelayConfig, parse_extension_ids

logger = logging.getLogger(__name__)

ENV_CONFIG_PATH = "TABRELAY_CONFIG"
ENV_PORT = "TABRELAY_PORT"
ENV_TOKEN = "TABRELAY_TOKEN"
ENV_EXTENSION_IDS = "TABRELAY_EXTENSION_IDS"
ENV_LOG_LEVEL = "TABRELAY_LOG_LEVEL"

_cached_config: Optional[TabRelayConfig] = None

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _substitute_env_vars(obj: Any, env: Mapping[str, str]) -> Any:
    """Recursively replace ${VAR} with environment values (unknown vars are left as-is)."""
    if isinstance(obj, str):
        return _ENV_VAR_RE.sub(lambda m: env.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v, env) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(v, env) for v in obj]
    return obj


def _resolve_config_path(config_path: Optional[str | Path], env: Mapping[str, str]) -> Optional[Path]:
    if config_path:
        return Path(config_path)
    if env.get(ENV_CONFIG_PATH):
        return Path(env[ENV_CONFIG_PATH])

    candidates = [
        Path.cwd() / "tabrelay.json",
        Path.cwd() / "tabrelay.json5",
        Path.home() / ".tabrelay" / "config.json",
        Path.home() / ".tabrelay" / "config.json5",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def load_config_raw(path: Path, env: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Load a config file with env-var substitution; returns the dict ready for validation."""
    env = os.environ if env is None else env
    obj = json5.loads(path.read_text(encoding="utf-8"))
    obj = _substitute_env_vars(obj, env)
    return obj if isinstance(obj, dict) else {}


def apply_env_overrides(config_dict: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Overlay TABRELAY_* environment variables onto a raw config dict."""
    result = dict(config_dict)

    port = env.get(ENV_PORT)
    if port:
        try:
            result["port"] = int(port, 10)
        except ValueError:
            logger.warning(f"Ignoring invalid {ENV_PORT}={port!r}")

    if ENV_TOKEN in env:
        result["token"] = env[ENV_TOKEN] or None

    if ENV_EXTENSION_IDS in env:
        result["extension_ids"] = parse_extension_ids(env[ENV_EXTENSION_IDS])

    if env.get(ENV_LOG_LEVEL):
        result["log_level"] = env[ENV_LOG_LEVEL].upper()

    return result


def load_config(
    config_path: Optional[str | Path] = None,
    env: Mapping[str, str] | None = None,
    use_cache: bool = True,
) -> TabRelayConfig:
    """Load tabrelay configuration.

    Args:
        config_path: Optional path to a JSON or JSON5 config file.
        env: Environment mapping (defaults to os.environ).
        use_cache: Return the cached config when one was loaded before.

    Returns:
        Validated TabRelayConfig (defaults when nothing is configured).
    """
    global _cached_config

    if use_cache and _cached_config is not None:
        return _cached_config

    env = os.environ if env is None else env
    config_dict: dict[str, Any] = {}
    path = _resolve_config_path(config_path, env)

    if path and path.exists():
        try:
            config_dict = load_config_raw(path, env)
            logger.debug(f"Loaded config from {path}: keys={list(config_dict.keys())}")
        except Exception as exc:
            logger.warning(f"Failed to load config from {path}: {exc}")
    elif path:
        logger.warning(f"Config file not found: {path}")

    config_dict = apply_env_overrides(config_dict, env)

    try:
        config_obj = TabRelayConfig(**config_dict)
    except Exception as exc:
        logger.warning(f"Failed to parse config: {exc}")
        config_obj = TabRelayConfig()

    if use_cache:
        _cached_config = config_obj
    return config_obj


def invalidate_config_cache() -> None:
    """Invalidate the in-process config cache so the next load_config() re-reads."""
    global _cached_config
    _cached_config = None


__all__ = [
    "ENV_CONFIG_PATH",
    "ENV_EXTENSION_IDS",
    "ENV_LOG_LEVEL",
    "ENV_PORT",
    "ENV_TOKEN",
    "apply_env_overrides",
    "invalidate_config_cache",
    "load_config",
    "load_config_raw",
]
