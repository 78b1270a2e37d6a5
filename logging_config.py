"""Logging configuration helpers for the attendance backend."""

from __future__ import annotations

import logging
from logging import Logger

from settings import LOG_LEVEL


def configure_logging(level: str = LOG_LEVEL) -> Logger:
    """Configure basic logging for the service and return its logger."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    return logging.getLogger("attendance")
