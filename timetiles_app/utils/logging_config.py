"""
Application-wide logging configuration.

Log lines go to stdout in one shared format; importer modules attach
structured context through ``extra={"importer_...": ...}`` which the
formatter ignores but log shippers can pick up.
"""

from __future__ import annotations

import logging
from logging.config import dictConfig

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(app) -> None:
    """
    Configure root, Flask app and importer loggers from ``LOG_LEVEL``.

    Safe to call again (tests do) to pick up a changed level.
    """
    log_level = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        log_level = "INFO"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": LOG_FORMAT,
                    "datefmt": LOG_DATE_FORMAT,
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": log_level,
                    "stream": "ext://sys.stdout",
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
            "loggers": {
                "timetiles_app": {"level": log_level},
                "celery": {"level": "INFO"},
            },
        }
    )
    app.logger.setLevel(log_level)
