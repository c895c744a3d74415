"""Centralized settings management for the vocabulary delivery scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from loguru import logger

from ..security.credentials import AppConfig, ChannelCredentials, CredentialManager, CredentialError
from .logging_config import LoggingConfig

if TYPE_CHECKING:
    from ..scheduler.scheduler import SchedulerConfig


@dataclass(frozen=True)
class Settings:
    """Centralized application settings."""

    # Paths
    config_file: Path
    database_path: Path
    templates_directory: Optional[Path]

    # Messaging
    channel_credentials: ChannelCredentials

    # Scheduling and dispatch
    app_config: AppConfig

    # Logging
    log_level: str
    log_file: Path

    @property
    def scheduler_config(self) -> SchedulerConfig:
        """Scheduling and dispatch options as the scheduler expects them."""
        # Imported here: the scheduler package imports this package's logging module
        from ..scheduler.delivery_settings import DuplicateTimePolicy
        from ..scheduler.scheduler import SchedulerConfig

        return SchedulerConfig(
            timezone=self.app_config.timezone,
            auto_window_start_hour=self.app_config.auto_window_start_hour,
            auto_window_end_hour=self.app_config.auto_window_end_hour,
            duplicate_policy=DuplicateTimePolicy(self.app_config.duplicate_time_policy),
            batch_limit=self.app_config.batch_limit,
            send_timeout_seconds=float(self.app_config.send_timeout_seconds),
            stale_after_minutes=self.app_config.stale_after_minutes,
            template_id=self.app_config.default_template
        )

    @property
    def logging_config(self) -> LoggingConfig:
        return LoggingConfig(log_file=self.log_file, log_level=self.log_level)

    @classmethod
    def from_credential_manager(
        cls,
        credential_manager: CredentialManager,
        templates_directory: Optional[Path] = None
    ) -> Settings:
        """Create Settings from CredentialManager.

        Raises:
            CredentialError: If loading credentials fails.
        """
        try:
            channel_credentials, app_config = credential_manager.load_credentials()

            return cls(
                config_file=credential_manager.config_file,
                database_path=Path(app_config.database_path),
                templates_directory=templates_directory,
                channel_credentials=channel_credentials,
                app_config=app_config,
                log_level=app_config.log_level,
                log_file=Path(app_config.log_file)
            )

        except Exception as e:
            logger.error(f"Failed to create settings from credential manager: {e}")
            raise CredentialError(f"Failed to load settings: {e}") from e


def load_settings(
    config_file: Path,
    master_password: str,
    templates_directory: Optional[Path] = None
) -> Settings:
    """Load application settings from encrypted configuration.

    Args:
        config_file: Path to encrypted configuration file.
        master_password: Master password for decryption.
        templates_directory: Optional directory of message template overrides.

    Returns:
        Loaded Settings instance.

    Raises:
        CredentialError: If loading fails.
    """
    try:
        credential_manager: CredentialManager = CredentialManager(config_file, master_password)
        settings: Settings = Settings.from_credential_manager(credential_manager, templates_directory)

        logger.info(f"Settings loaded successfully from {config_file}")
        return settings

    except CredentialError:
        raise
    except Exception as e:
        logger.error(f"Failed to load settings: {e}")
        raise CredentialError(f"Failed to load settings: {e}") from e
