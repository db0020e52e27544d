"""Logging setup for forgeflow processes."""

from __future__ import annotations

import logging
from typing import Optional

from .config import LoggingConfig


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Apply level and format to the ``forgeflow`` logger hierarchy."""
    config = config or LoggingConfig()
    level = logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {config.level}")
    logging.basicConfig(format=config.format)
    logging.getLogger("forgeflow").setLevel(level)
