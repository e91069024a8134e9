"""Logging helpers for the exercise harvester pipeline."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from config import Settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Client libraries that log every HTTP round trip at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore", "openai")


def configure_logging(settings: Settings, *, force: bool = False) -> None:
    """Configure root logging handlers and levels using provided settings."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        handlers=[logging.StreamHandler(sys.stdout)],
        format=LOG_FORMAT,
        force=force,
    )
    if settings.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    else:
        for name in _CHATTY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger instance, initializing basic config if needed."""
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            handlers=[logging.StreamHandler(sys.stdout)],
            format=LOG_FORMAT,
        )
    return logging.getLogger(name or "exercise_harvester")
