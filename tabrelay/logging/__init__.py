"""Logging setup for tabrelay.

Modules log through ``logging.getLogger(__name__)``; the CLI calls
``setup_logging`` once to route everything to a rich handler on stderr.
"""

from __future__ import annotations

from .handlers import LogLevel, parse_level, setup_logging

__all__ = [
    "LogLevel",
    "parse_level",
    "setup_logging",
]
