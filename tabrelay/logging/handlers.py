from __future__ import annotations

import logging
from enum import Enum

from rich.console import Console
from rich.logging import RichHandler


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


def parse_level(level: str | int | None, default: int = logging.INFO) -> int:
    """Map a level name (case-insensitive) or number to a logging level."""
    if level is None:
        return default
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    return value if isinstance(value, int) else default


def setup_logging(level: str | int | None = "INFO", *, show_path: bool = False) -> None:
    """Install a RichHandler on stderr for the ``tabrelay`` logger tree.

    stdout is left untouched so the MCP stdio transport stays clean.
    """
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=show_path,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    root = logging.getLogger("tabrelay")
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(parse_level(level))
    root.propagate = False
