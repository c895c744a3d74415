"""Configuration package for the vocabulary delivery scheduler."""

from .logging_config import setup_logging, get_logger, LoggingConfig, LoggedOperation, StructuredLogger
from .settings import Settings, load_settings

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "LoggingConfig",
    "LoggedOperation",
    "StructuredLogger",
    # Settings
    "Settings",
    "load_settings",
]
