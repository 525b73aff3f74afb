"""
SAB Census Crosswalk - Logging Configuration

Console and dated file logging for crosswalk runs. Production runs emit one
JSON object per line tagged with the environment, so a national run can be
filtered by region or tier from the aggregated logs.
"""

import logging
import os
import sys
from datetime import datetime

from pythonjsonlogger.json import JsonFormatter

from config.settings import get_settings

settings = get_settings()

# Chatty at INFO while reading shapefiles and calling the Census API
NOISY_LOGGERS = ("urllib3", "pyogrio", "fiona", "pygris")


def _build_formatter() -> logging.Formatter:
    if settings.ENVIRONMENT == "production":
        return JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
            rename_fields={"levelname": "level", "name": "module"},
            static_fields={"environment": settings.ENVIRONMENT},
        )
    return logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )


def setup_logging(name: str = "sab_crosswalk") -> logging.Logger:
    """
    Configure logging for a crosswalk entry point.

    The handlers are shared with the root logger so every
    `get_logger(__name__)` module logger writes to the same console and
    log file.

    Args:
        name: Logger name, also the log file prefix

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, settings.LOG_LEVEL))
    logger.handlers = []
    logger.propagate = False

    formatter = _build_formatter()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if settings.LOG_DIR:
        os.makedirs(settings.LOG_DIR, exist_ok=True)
        log_file = os.path.join(settings.LOG_DIR, f"{name}_{datetime.now().strftime('%Y%m%d')}.log")
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(logger.level)
    root_logger.handlers = list(logger.handlers)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(logger.level, logging.WARNING))

    return logger


def get_logger(module_name: str) -> logging.Logger:
    """Module logger (pass __name__)."""
    return logging.getLogger(module_name)
