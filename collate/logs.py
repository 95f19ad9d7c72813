from __future__ import annotations

import logging
from typing import Optional

from .env import read_env

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach a single stream handler to the ``collate`` logger tree."""
    name = (level or read_env("COLLATE_LOG_LEVEL") or "INFO").strip().upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    logger = logging.getLogger("collate")
    logger.setLevel(resolved)
    if not any(getattr(handler, "_collate_handler", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._collate_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
