"""Unified logging configuration for the relay, the bridge and the simulator.

All three entry points call :func:`configure_logging` once at startup so that
application and uvicorn log entries share one timestamped format.

Usage:
    >>> from ardubridge.logging_config import configure_logging
    >>> configure_logging()

    When starting uvicorn:
    >>> from ardubridge.logging_config import get_uvicorn_log_config
    >>> uvicorn.run(app, log_config=get_uvicorn_log_config())

Configuration:
    - Log level: ARDUBRIDGE_LOG_LEVEL environment variable (default: INFO)
    - Access logs: shown only when ARDUBRIDGE_VERBOSE_LOGGING is truthy
    - Format: "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"
    - Date format: "%Y-%m-%d %H:%M:%S"
"""

import logging
import logging.config
import os
from typing import Any, Dict

from .utils import get_env_bool

LOG_LEVEL_ENV = "ARDUBRIDGE_LOG_LEVEL"
VERBOSE_LOGGING_ENV = "ARDUBRIDGE_VERBOSE_LOGGING"

LOG_FORMAT = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_level() -> str:
    """Get the log level from environment variable with fallback."""
    return (os.getenv(LOG_LEVEL_ENV, "INFO") or "INFO").upper()


def get_logging_config() -> Dict[str, Any]:
    """Generate a unified logging configuration dictionary.

    Access logs from uvicorn are kept at WARNING unless verbose logging is
    enabled, so health probes do not flood the output.
    """
    log_level = get_log_level()
    verbose_logging = get_env_bool(VERBOSE_LOGGING_ENV, False)
    access_log_level = log_level if verbose_logging else "WARNING"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": LOG_FORMAT,
                "datefmt": DATE_FORMAT,
            },
            "access": {
                "format": LOG_FORMAT,
                "datefmt": DATE_FORMAT,
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
            },
            "access": {
                "formatter": "access",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "uvicorn": {
                "handlers": ["default"],
                "level": log_level,
                "propagate": False,
            },
            "uvicorn.error": {
                "handlers": ["default"],
                "level": log_level,
                "propagate": False,
            },
            "uvicorn.access": {
                "handlers": ["access"],
                "level": access_log_level,
                "propagate": False,
            },
            "ardubridge": {
                "handlers": ["default"],
                "level": log_level,
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["default"],
        },
    }


def configure_logging() -> None:
    """Configure logging for the entire application.

    This should be called once at process startup, before any other
    logging configuration or logger creation.
    """
    logging.config.dictConfig(get_logging_config())


def get_uvicorn_log_config() -> Dict[str, Any]:
    """Get uvicorn-specific log configuration (same as the application one)."""
    return get_logging_config()
