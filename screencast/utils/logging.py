"""
Logging helpers for screencast processes.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
ENV_LEVEL_VAR = "SCREENCAST_LOG_LEVEL"


def resolve_level(level: Union[int, str, None]) -> int:
    """Accept ``logging`` constants or names such as ``"debug"``."""

    if level is None:
        level = os.environ.get(ENV_LEVEL_VAR) or logging.INFO
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"unknown log level {level!r}")
    return value


def configure_logging(level: Union[int, str, None] = None, format: Optional[str] = None) -> None:
    """
    Ensure the root logger is configured exactly once.
    """

    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    logging.basicConfig(
        level=resolve_level(level),
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
