"""Centralized logging configuration."""
from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: str = "WARNING", console: Optional[Console] = None) -> None:
    """Send all log records through a single ``RichHandler`` on stderr."""
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(name)s - %(message)s", datefmt="[%X]"))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.WARNING))

    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)

    root_logger.addHandler(handler)
