"""Core module exports."""

from chatcache.core.config import Settings, get_settings
from chatcache.core.exceptions import (
    AppException,
    DataCorruptionError,
    NotFoundError,
    RateLimitError,
    ScriptExecutionError,
    StoreUnavailableError,
    ValidationError,
)
from chatcache.core.logging import get_logger, setup_logging
from chatcache.core.tasks import create_background_task

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Logging
    "get_logger",
    "setup_logging",
    # Tasks
    "create_background_task",
    # Exceptions
    "AppException",
    "DataCorruptionError",
    "NotFoundError",
    "RateLimitError",
    "ScriptExecutionError",
    "StoreUnavailableError",
    "ValidationError",
]
