"""
Logging Configuration

Structured logging setup for scheduled jobs and worker processes.
Outputs to stdout for container log aggregation compatibility.
"""

import sys
from logging.config import dictConfig

from bookmatch.core.config import Settings, get_settings


def setup_logging(settings: Settings | None = None) -> None:
    """
    Initialize application logging with consistent formatting.

    Configuration:
        - Output: stdout (Docker/K8s friendly)
        - Format: Timestamp | Level | Module | Message
        - Level: Controlled via LOG_LEVEL env var

    Note:
        Call once at process startup (each script's ``main``).
    """
    log_level = (settings or get_settings()).log_level.upper()

    log_format = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,  # Preserve third-party loggers
        "formatters": {
            "default": {
                "format": log_format,
                "datefmt": date_format,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "stream": sys.stdout,
                "formatter": "default",
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
        "loggers": {
            "bookmatch": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,  # Prevent duplicate logs to root
            },
            # One line per request is too chatty for batch jobs
            "httpx": {"level": "WARNING", "handlers": ["console"], "propagate": False},
            "openai": {"level": "WARNING", "handlers": ["console"], "propagate": False},
            "sqlalchemy.engine": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
        },
    }

    dictConfig(logging_config)
