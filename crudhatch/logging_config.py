"""
Centralized logging configuration for crudhatch.

This module provides a consistent logging setup across the package
with support for different environments.
"""

import functools
import logging
import logging.config
import os
import sys
import time
from typing import Dict, Any, Optional


class ContextFilter(logging.Filter):
    """Add contextual information to log records."""

    def __init__(self, context: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.context = context or {}

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            setattr(record, key, value)
        return True


def get_log_level() -> str:
    """Get log level from environment variable or default to INFO."""
    return os.getenv("CRUDHATCH_LOG_LEVEL", "INFO").upper()


def get_log_format() -> str:
    """Get log format based on environment."""
    env = os.getenv("CRUDHATCH_ENV", "development").lower()

    if env == "production":
        return "%(asctime)s | %(name)s | %(levelname)s | %(message)s | %(pathname)s:%(lineno)d"
    else:
        return "%(asctime)s | %(name)-28s | %(levelname)-8s | %(message)s"


def get_logging_config() -> Dict[str, Any]:
    """Get the logging configuration dictionary."""
    log_level = get_log_level()
    log_format = get_log_format()

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": log_format,
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "detailed": {
                "format": "%(asctime)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "standard",
                "stream": sys.stdout,
            },
        },
        "loggers": {
            "crudhatch": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": True,
            },
            "asyncpg": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
        },
    }

    log_file = os.getenv("CRUDHATCH_LOG_FILE")
    if log_file:
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "detailed",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
        }
        config["loggers"]["crudhatch"]["handlers"].append("file")

    return config


def setup_logging() -> None:
    """Setup logging configuration for the application."""
    logging.config.dictConfig(get_logging_config())

    logger = logging.getLogger("crudhatch.logging")
    logger.debug("Logging configured with level: %s", get_log_level())

    if os.getenv("CRUDHATCH_LOG_FILE"):
        logger.info("File logging enabled: %s", os.getenv("CRUDHATCH_LOG_FILE"))


def get_logger(name: str, context: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """
    Get a logger with the specified name and optional context.

    Args:
        name: Logger name (typically __name__ of the module)
        context: Optional context dictionary to add to all log records

    Returns:
        Configured logger instance
    """
    if not name.startswith("crudhatch"):
        if name == "__main__":
            name = "crudhatch.main"
        else:
            name = f"crudhatch.{name}"

    logger = logging.getLogger(name)

    if context and not any(
        isinstance(existing, ContextFilter) and existing.context == context for existing in logger.filters
    ):
        logger.addFilter(ContextFilter(context))

    return logger


def log_performance(logger: logging.Logger, operation: str):
    """
    Decorator to log performance timing of async operations.

    Args:
        logger: Logger instance to use
        operation: Description of the operation being timed
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                logger.debug(
                    "Operation '%s' completed in %.3fs", operation, time.perf_counter() - start_time
                )
                return result
            except Exception as e:
                logger.debug(
                    "Operation '%s' failed after %.3fs: %s",
                    operation,
                    time.perf_counter() - start_time,
                    e,
                )
                raise

        return wrapper

    return decorator


# Initialize logging when module is imported
if not logging.getLogger().handlers:
    setup_logging()
