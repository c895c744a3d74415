"""
Main Application Entry Point for the Vocabulary Delivery Scheduler

Integrates settings, logging, storage, scheduling and dispatch.
"""

from __future__ import annotations

import os
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from .channel.service import MessagingChannel, create_channel
from .channel.templates import MessageTemplateManager
from .config.logging_config import LoggingConfig, StructuredLogger, setup_logging
from .config.settings import Settings, load_settings
from .database.operations import DATABASE_PATH, initialize_database
from .scheduler.dispatcher import OutboxDispatcher, SweepResult
from .scheduler.monitor import HealthMonitor
from .scheduler.scheduler import BatchScheduleResult, DailyScheduler, SchedulerConfig
from .security.credentials import CredentialError


DEFAULT_CONFIG_FILE: Path = Path("config/credentials.enc")


class VocabSchedulerApplication:
    """Main application class that coordinates all components."""

    def __init__(
        self,
        config_path: Optional[Path] = None,
        database_path: Optional[Path] = None,
        console_logging: bool = True
    ) -> None:
        """Initialize the application.

        Args:
            config_path: Encrypted configuration file.
            database_path: Overrides the database path from the configuration.
            console_logging: Whether log records also go to stderr.
        """
        self.config_path: Path = config_path or DEFAULT_CONFIG_FILE
        self.database_override: Optional[Path] = database_path
        self.console_logging: bool = console_logging
        self.settings: Optional[Settings] = None
        self.structured_logger: Optional[StructuredLogger] = None
        self._channel: Optional[MessagingChannel] = None

    @property
    def database_path(self) -> Path:
        if self.database_override is not None:
            return self.database_override
        if self.settings is not None:
            return self.settings.database_path
        return DATABASE_PATH

    @property
    def scheduler_config(self) -> SchedulerConfig:
        return self.settings.scheduler_config if self.settings else SchedulerConfig()

    def initialize(self, master_password: Optional[str] = None) -> None:
        """Load settings when available, then set up logging and the database.

        Without a master password or configuration file the application runs
        with default scheduling options, which is enough for everything except
        dispatch.

        Raises:
            CredentialError: If the configuration exists but cannot be loaded.
            DatabaseError: If the database cannot be initialized.
        """
        if master_password and self.config_path.exists():
            self.settings = load_settings(self.config_path, master_password)

        logging_config = LoggingConfig(
            log_file=self.settings.log_file if self.settings else Path("vocab_scheduler.log"),
            log_level=self.settings.log_level if self.settings else "INFO",
            console_enabled=self.console_logging
        )
        self.structured_logger = setup_logging(logging_config)

        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        initialize_database(self.database_path)
        logger.info(
            f"Application initialized (database {self.database_path}, "
            f"configuration {'loaded' if self.settings else 'not loaded'})"
        )

    def _require_logger(self) -> StructuredLogger:
        if self.structured_logger is None:
            raise RuntimeError("Application not initialized")
        return self.structured_logger

    @property
    def channel(self) -> MessagingChannel:
        """The configured messaging channel.

        Raises:
            CredentialError: If no channel credentials are loaded.
        """
        if self._channel is None:
            if self.settings is None:
                raise CredentialError(
                    f"Channel credentials not loaded; run setup and provide the master password ({self.config_path})"
                )
            self._channel = create_channel(self.settings.channel_credentials)
        return self._channel

    def create_scheduler(self) -> DailyScheduler:
        return DailyScheduler(self.scheduler_config, self.database_path, self._require_logger())

    def create_dispatcher(self, channel: Optional[MessagingChannel] = None) -> OutboxDispatcher:
        templates_dir: Optional[Path] = self.settings.templates_directory if self.settings else None
        return OutboxDispatcher(
            channel or self.channel,
            config=self.scheduler_config,
            template_manager=MessageTemplateManager(templates_dir),
            db_path=self.database_path,
            structured_logger=self._require_logger()
        )

    def create_monitor(self) -> HealthMonitor:
        return HealthMonitor(self.database_path, structured_logger=self._require_logger())

    def run_scheduling(self, today: Optional[date] = None) -> BatchScheduleResult:
        return self.create_scheduler().schedule_all(today)

    def run_dispatch(self, now: Optional[datetime] = None) -> SweepResult:
        return self.create_dispatcher().dispatch_due(now)

    def run_daily_job(self, today: Optional[date] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Schedule every subscriber, then dispatch whatever is due."""
        scheduling: BatchScheduleResult = self.run_scheduling(today)
        dispatch: SweepResult = self.run_dispatch(now)
        return {"scheduling": scheduling.to_dict(), "dispatch": dispatch.to_dict()}

    def get_health_status(self) -> Dict[str, Any]:
        """Get application health status as a dictionary."""
        try:
            return self.create_monitor().health_report()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {'is_healthy': False, 'error': str(e)}


def main() -> int:
    """Run the daily job using ``MASTER_PASSWORD`` from the environment."""
    app = VocabSchedulerApplication()
    try:
        app.initialize(os.environ.get("MASTER_PASSWORD"))
        summary: Dict[str, Any] = app.run_daily_job()
        logger.info(f"Daily job finished: {summary}")
        return 0
    except KeyboardInterrupt:
        logger.info("Application stopped by user")
        return 0
    except Exception as e:
        logger.error(f"Application error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
