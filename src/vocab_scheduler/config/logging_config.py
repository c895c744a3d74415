"""Loguru sinks and structured log helpers for scheduling and dispatch runs."""

from __future__ import annotations

import itertools
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType
from typing import Any, Dict, Optional, Union

from loguru import logger

LOG_LEVELS: frozenset[str] = frozenset(
    {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}
)

CONSOLE_FORMAT: str = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)
FILE_FORMAT: str = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | "
    "{thread.name} | {message} | {extra}"
)
ERROR_FORMAT: str = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}\n"
    "{extra}\n{exception}\n---"
)


@dataclass(frozen=True)
class LoggingConfig:
    """Where and how verbosely the scheduler writes its logs."""

    log_file: Path = Path("vocab_scheduler.log")
    log_level: str = "INFO"
    rotation_size: str = "10 MB"
    retention_count: int = 10
    compression: str = "zip"

    console_enabled: bool = True
    console_level: str = "INFO"

    # Sweeps or batches slower than this get a warning
    slow_operation_threshold_seconds: float = 5.0

    # Separate *.error.log with backtraces
    enable_error_context: bool = True

    def __post_init__(self) -> None:
        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.log_level}")
        if self.console_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Invalid console log level: {self.console_level}")
        if self.retention_count < 1:
            raise ValueError("Retention count must be at least 1")
        if self.slow_operation_threshold_seconds <= 0:
            raise ValueError("Slow operation threshold must be positive")

    @property
    def error_log_file(self) -> Path:
        return self.log_file.with_suffix(".error.log")


class StructuredLogger:
    """Loguru wrapper that attaches structured context to scheduler events.

    Context is bound into the record's ``extra`` dict rather than passed as
    format arguments, so messages containing braces (provider error bodies,
    JSON snippets) are logged verbatim.
    """

    def __init__(self, config: LoggingConfig) -> None:
        self.config: LoggingConfig = config
        self._operation_counter = itertools.count(1)
        self._install_sinks()

    def _install_sinks(self) -> None:
        logger.remove()

        if self.config.console_enabled:
            logger.add(
                sys.stderr,
                level=self.config.console_level.upper(),
                format=CONSOLE_FORMAT,
                colorize=True,
                enqueue=True
            )

        logger.add(
            str(self.config.log_file),
            level=self.config.log_level.upper(),
            format=FILE_FORMAT,
            rotation=self.config.rotation_size,
            retention=self.config.retention_count,
            compression=self.config.compression,
            enqueue=True
        )

        if self.config.enable_error_context:
            logger.add(
                str(self.config.error_log_file),
                level="ERROR",
                format=ERROR_FORMAT,
                rotation=self.config.rotation_size,
                retention=self.config.retention_count,
                compression=self.config.compression,
                enqueue=True,
                backtrace=True,
                diagnose=False
            )

    def new_operation_id(self, operation: str) -> str:
        stamp: str = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        return f"{operation}-{stamp}-{next(self._operation_counter)}"

    def log_operation_start(self, operation: str, **context: Any) -> str:
        """Log the start of an operation and return the id that ties its records together."""
        operation_id: str = self.new_operation_id(operation)
        logger.bind(operation_id=operation_id, operation=operation, **context).info(
            f"Started {operation}"
        )
        return operation_id

    def log_operation_end(
        self,
        operation_id: str,
        operation: str,
        success: bool = True,
        error: Optional[BaseException] = None,
        **context: Any
    ) -> None:
        bound = logger.bind(operation_id=operation_id, operation=operation, success=success, **context)

        if success:
            bound.success(f"Finished {operation}")
        else:
            bound.bind(
                error_type=type(error).__name__ if error else None,
                error_message=str(error) if error else None
            ).error(f"{operation} failed: {error}")

    def log_performance_metric(
        self,
        metric_name: str,
        value: Union[int, float],
        unit: str = "",
        **context: Any
    ) -> None:
        """Record a numeric measurement; ``*_duration_seconds`` metrics over the threshold warn."""
        logger.bind(metric_name=metric_name, metric_value=value, metric_unit=unit, **context).debug(
            f"{metric_name}={value}{unit and ' ' + unit}"
        )

        threshold: float = self.config.slow_operation_threshold_seconds
        if metric_name.endswith("_duration_seconds") and value > threshold:
            logger.bind(metric_name=metric_name, threshold_seconds=threshold, **context).warning(
                f"Slow operation: {metric_name} took {value:.2f}s (threshold {threshold:.2f}s)"
            )

    def log_schedule_batch(
        self,
        user_id: str,
        schedule_date: str,
        count: int,
        created: bool,
        **context: Any
    ) -> None:
        """Log the outcome of scheduling one user's day."""
        verb: str = "Scheduled" if created else "Reused existing schedule of"
        logger.bind(
            schedule_user_id=user_id,
            schedule_date=schedule_date,
            schedule_count=count,
            schedule_created=created,
            **context
        ).info(f"{verb} {count} messages for {user_id} on {schedule_date}")

    def log_dispatch_operation(
        self,
        message_id: int,
        destination: str,
        success: bool,
        channel_message_id: Optional[str] = None,
        error: Optional[str] = None,
        **context: Any
    ) -> None:
        """Log a single outbox send attempt."""
        bound = logger.bind(
            dispatch_message_id=message_id,
            dispatch_destination=destination,
            dispatch_channel_message_id=channel_message_id,
            **context
        )

        if success:
            bound.info(f"Sent outbox message {message_id} as {channel_message_id}")
        else:
            bound.error(f"Outbox message {message_id} failed: {error}")


def setup_logging(config: Optional[LoggingConfig] = None) -> StructuredLogger:
    """Install the loguru sinks described by ``config`` and return the wrapper.

    Args:
        config: Logging configuration. Defaults to ``LoggingConfig()``.

    Returns:
        The StructuredLogger that scheduler components should log through.
    """
    global _default_structured_logger

    config = config or LoggingConfig()
    config.log_file.parent.mkdir(parents=True, exist_ok=True)

    structured_logger = StructuredLogger(config)
    _default_structured_logger = structured_logger

    logger.debug(
        f"Logging to {config.log_file} at {config.log_level.upper()} "
        f"(console {'on' if config.console_enabled else 'off'})"
    )
    return structured_logger


class LoggedOperation:
    """Times a block and logs its start, duration and outcome.

    Exceptions raised inside the block are logged and then propagate.
    """

    def __init__(
        self,
        structured_logger: StructuredLogger,
        operation_name: str,
        **context: Any
    ) -> None:
        self.structured_logger: StructuredLogger = structured_logger
        self.operation_name: str = operation_name
        self.context: Dict[str, Any] = context
        self.operation_id: Optional[str] = None
        self._started: Optional[float] = None

    def __enter__(self) -> LoggedOperation:
        self._started = time.perf_counter()
        self.operation_id = self.structured_logger.log_operation_start(self.operation_name, **self.context)
        return self

    def __exit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        _: Optional[TracebackType]
    ) -> None:
        if self._started is None or self.operation_id is None:
            return

        duration_seconds: float = round(time.perf_counter() - self._started, 3)
        self.structured_logger.log_performance_metric(
            f"{self.operation_name}_duration_seconds",
            duration_seconds,
            "s",
            operation_id=self.operation_id
        )
        self.structured_logger.log_operation_end(
            self.operation_id,
            self.operation_name,
            success=exc_type is None,
            error=exc_val,
            duration_seconds=duration_seconds,
            **self.context
        )


_default_structured_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Return the logger installed by setup_logging, installing defaults on first use."""
    if _default_structured_logger is None:
        return setup_logging()
    return _default_structured_logger
