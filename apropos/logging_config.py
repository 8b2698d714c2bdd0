"""Apropos logging configuration.

Modules log through `logging.getLogger(__name__)`; this sets up the root handler once
for the daemon. Level comes from `APROPOS_LOG_LEVEL` (default INFO).
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Chatty third-party loggers kept at WARNING unless explicitly asked for DEBUG
_NOISY_LOGGERS = ("uvicorn.access", "asyncio")


def setup_logging(level: Optional[str] = None) -> None:
    """Configure Apropos logging.

    Args:
        level: Optional override for `APROPOS_LOG_LEVEL`.
    """
    if level:
        os.environ["APROPOS_LOG_LEVEL"] = level

    resolved = os.getenv("APROPOS_LOG_LEVEL", "INFO").upper()
    numeric = logging.getLevelName(resolved)
    if not isinstance(numeric, int):
        numeric = logging.INFO

    logging.basicConfig(level=numeric, format=LOG_FORMAT, force=True)
    if numeric > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
