"""
Logging Configuration

Everything goes to stdout in one line format; the container runtime
collects it. The API, the in-process worker and the maintenance scripts
all call ``setup_logging()`` once at startup.
"""

import sys
from logging.config import dictConfig
from typing import Any

from docchat.core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers and the level they are capped at
LIBRARY_LEVELS: dict[str, str] = {
    "uvicorn": "INFO",
    "uvicorn.access": "INFO",
    "sqlalchemy.engine": "WARNING",
    "alembic": "INFO",
    "httpx": "WARNING",
    "openai": "WARNING",
}


def _logger(level: str) -> dict[str, Any]:
    return {"level": level, "handlers": ["console"], "propagate": False}


def setup_logging(level: str | None = None) -> None:
    """
    Configure the ``docchat`` logger tree and the library loggers.

    Args:
        level: Overrides ``LOG_LEVEL`` for the application loggers.
    """
    app_level = (level or settings.LOG_LEVEL).upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT, "datefmt": DATE_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "stream": sys.stdout,
                    "formatter": "default",
                },
            },
            "root": {"level": "WARNING", "handlers": ["console"]},
            "loggers": {
                "docchat": _logger(app_level),
                **{name: _logger(lvl) for name, lvl in LIBRARY_LEVELS.items()},
            },
        }
    )
