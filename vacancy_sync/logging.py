"""Loguru sink setup.

Components log through `get_logger("api")` etc., which binds a `component`
extra shown in every line.
"""

from __future__ import annotations

import sys
from typing import Optional

from loguru import logger

COMPONENTS = ("api", "core", "provider", "scheduler", "mapping", "system")

_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[component]: <9} | {message}"
)

logger.configure(extra={"component": "system"})


def setup_logging(level: str = "INFO", log_file: Optional[str] = None, retention_days: int = 30) -> None:
    """Replace the default sink with our format; optionally add a rotating file sink."""
    logger.remove()
    logger.add(sys.stderr, format=_FORMAT, level=level.upper())
    if log_file:
        logger.add(
            log_file,
            format=_FORMAT,
            rotation="1 day",
            retention=f"{retention_days} days",
            level=level.upper(),
        )


def get_logger(component: str):
    if component not in COMPONENTS:
        component = "system"
    return logger.bind(component=component)
