"""Logging configuration for CRM Pilot."""

import logging
import sys
from typing import Optional

from crmpilot.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: Optional[int] = None) -> logging.Logger:
    """Configure and return the application logger.

    The level defaults to CRMPILOT_LOG_LEVEL (INFO when unset or unknown).
    """
    if level is None:
        level = logging.getLevelName(LOG_LEVEL.upper())
        if not isinstance(level, int):
            level = logging.INFO

    app_logger = logging.getLogger("crmpilot")
    app_logger.setLevel(level)

    if not app_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        app_logger.addHandler(handler)

    return app_logger


logger = setup_logging()
