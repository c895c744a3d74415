"""Credential management system for secure storage of messaging credentials."""

from __future__ import annotations

import json
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, Any, Final, Optional

from loguru import logger

from .encryption import EncryptionManager, DecryptionError


CONFIG_VERSION: Final[str] = "1.0"
PROVIDERS: Final[tuple[str, ...]] = ("twilio", "whatsapp")
DUPLICATE_POLICIES: Final[tuple[str, ...]] = ("stagger", "allow")


class CredentialError(Exception):
    """Base exception for credential operations."""
    pass


@dataclass(frozen=True)
class ChannelCredentials:
    """Immutable messaging provider credentials.

    Twilio needs ``account_sid``, ``auth_token`` and ``from_number``; the
    WhatsApp Cloud API needs ``phone_number_id`` and ``access_token``.
    """
    provider: str
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    phone_number_id: str = ""
    access_token: str = ""
    max_messages_per_hour: int = 1000
    timeout_seconds: int = 30

    def __post_init__(self) -> None:
        """Validate credentials after initialization."""
        if self.provider not in PROVIDERS:
            raise ValueError(f"Provider must be one of {', '.join(PROVIDERS)}")
        if self.provider == "twilio":
            if not self.account_sid.strip():
                raise ValueError("Twilio account SID cannot be empty")
            if not self.auth_token.strip():
                raise ValueError("Twilio auth token cannot be empty")
            if not self.from_number.strip():
                raise ValueError("Twilio sender number cannot be empty")
        else:
            if not self.phone_number_id.strip():
                raise ValueError("WhatsApp phone number id cannot be empty")
            if not self.access_token.strip():
                raise ValueError("WhatsApp access token cannot be empty")
        if self.max_messages_per_hour <= 0:
            raise ValueError("Max messages per hour must be positive")
        if self.timeout_seconds <= 0:
            raise ValueError("Timeout must be positive")


@dataclass(frozen=True)
class AppConfig:
    """Application configuration including non-sensitive settings."""
    database_path: str = "vocab_scheduler.db"
    timezone: str = "Asia/Kolkata"
    auto_window_start_hour: int = 9
    auto_window_end_hour: int = 21
    duplicate_time_policy: str = "stagger"
    batch_limit: int = 500
    send_timeout_seconds: int = 30
    stale_after_minutes: Optional[int] = None
    default_template: str = "daily_vocab_word"
    log_level: str = "INFO"
    log_file: str = "vocab_scheduler.log"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not self.database_path.strip():
            raise ValueError("Database path cannot be empty")
        if not self.timezone.strip():
            raise ValueError("Timezone cannot be empty")
        if not 0 <= self.auto_window_start_hour <= self.auto_window_end_hour <= 23:
            raise ValueError("Auto window hours must satisfy 0 <= start <= end <= 23")
        if self.duplicate_time_policy not in DUPLICATE_POLICIES:
            raise ValueError(f"Duplicate time policy must be one of {', '.join(DUPLICATE_POLICIES)}")
        if self.batch_limit <= 0:
            raise ValueError("Batch limit must be positive")
        if self.send_timeout_seconds <= 0:
            raise ValueError("Send timeout must be positive")
        if self.stale_after_minutes is not None and self.stale_after_minutes <= 0:
            raise ValueError("Stale cutoff must be positive when set")


class CredentialManager:
    """Manages secure storage and retrieval of credentials and configuration."""

    def __init__(self, config_file: Path, master_password: str) -> None:
        """Initialize credential manager.

        Args:
            config_file: Path to encrypted configuration file.
            master_password: Master password for encryption/decryption.
        """
        self.config_file: Path = config_file
        self.encryption_manager: EncryptionManager = EncryptionManager(master_password)
        self._cached_credentials: Optional[ChannelCredentials] = None
        self._cached_config: Optional[AppConfig] = None

        logger.debug(f"Credential manager initialized with config file: {config_file}")

    def save_credentials(
        self,
        channel_credentials: ChannelCredentials,
        app_config: AppConfig
    ) -> None:
        """Save encrypted credentials and configuration to file.

        Raises:
            CredentialError: If saving fails.
        """
        try:
            config_data: Dict[str, Any] = {
                'channel_credentials': asdict(channel_credentials),
                'app_config': asdict(app_config),
                'version': CONFIG_VERSION
            }

            json_data: str = json.dumps(config_data, indent=2, sort_keys=True)

            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            self.config_file.write_bytes(self.encryption_manager.seal(json_data))

            self._cached_credentials = channel_credentials
            self._cached_config = app_config

            logger.info(f"Credentials saved successfully to {self.config_file}")

        except Exception as e:
            logger.error(f"Failed to save credentials: {e}")
            raise CredentialError(f"Failed to save credentials: {e}") from e

    def load_credentials(self) -> tuple[ChannelCredentials, AppConfig]:
        """Load and decrypt credentials and configuration from file.

        Returns:
            Tuple of (ChannelCredentials, AppConfig).

        Raises:
            CredentialError: If loading fails.
        """
        try:
            if self._cached_credentials and self._cached_config:
                logger.debug("Returning cached credentials")
                return self._cached_credentials, self._cached_config

            if not self.config_file.exists():
                raise FileNotFoundError(f"Configuration file not found: {self.config_file}")

            json_data: str = self.encryption_manager.unseal(self.config_file.read_bytes())
            config_data: Dict[str, Any] = json.loads(json_data)

            version: str = config_data.get('version', CONFIG_VERSION)
            if version != CONFIG_VERSION:
                logger.warning(f"Unsupported configuration version: {version}")

            channel_credentials: ChannelCredentials = ChannelCredentials(**config_data['channel_credentials'])
            app_config: AppConfig = AppConfig(**config_data['app_config'])

            self._cached_credentials = channel_credentials
            self._cached_config = app_config

            logger.info("Credentials loaded successfully")
            return channel_credentials, app_config

        except DecryptionError as e:
            logger.error("Failed to decrypt credentials (wrong password?)")
            raise CredentialError("Failed to decrypt credentials: Wrong password or corrupted file") from e
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Invalid configuration file format: {e}")
            raise CredentialError(f"Invalid configuration file format: {e}") from e
        except Exception as e:
            logger.error(f"Failed to load credentials: {e}")
            raise CredentialError(f"Failed to load credentials: {e}") from e

    def update_channel_credentials(self, channel_credentials: ChannelCredentials) -> None:
        """Replace the channel credentials, keeping app config unchanged.

        Raises:
            CredentialError: If update fails.
        """
        _, current_app_config = self.load_credentials()
        self.save_credentials(channel_credentials, current_app_config)
        logger.info("Channel credentials updated successfully")

    def update_app_config(self, app_config: AppConfig) -> None:
        """Replace the app configuration, keeping channel credentials unchanged.

        Raises:
            CredentialError: If update fails.
        """
        current_credentials, _ = self.load_credentials()
        self.save_credentials(current_credentials, app_config)
        logger.info("Application configuration updated successfully")

    def config_exists(self) -> bool:
        return self.config_file.exists()

    def verify_master_password(self) -> bool:
        """Verify if the current master password is correct."""
        try:
            self.load_credentials()
            return True
        except CredentialError:
            return False

    def delete_config(self) -> None:
        """Securely delete the configuration file.

        Raises:
            CredentialError: If deletion fails.
        """
        try:
            if self.config_file.exists():
                self.encryption_manager.secure_delete_file(self.config_file)
                logger.info(f"Configuration file deleted: {self.config_file}")
            else:
                logger.warning(f"Configuration file does not exist: {self.config_file}")

            self._cached_credentials = None
            self._cached_config = None

        except Exception as e:
            logger.error(f"Failed to delete configuration file: {e}")
            raise CredentialError(f"Failed to delete configuration file: {e}") from e

    @classmethod
    def setup_wizard(
        cls,
        config_file: Path,
        master_password: str,
        channel_credentials: ChannelCredentials,
        app_config: Optional[AppConfig] = None
    ) -> CredentialManager:
        """Create the encrypted configuration file for a first run.

        Args:
            config_file: Path where config file will be saved.
            master_password: Master password for encryption.
            channel_credentials: Messaging provider credentials.
            app_config: Application configuration; defaults when None.

        Returns:
            Configured CredentialManager instance.

        Raises:
            CredentialError: If setup fails.
        """
        logger.info("Starting credential setup wizard")

        manager: CredentialManager = cls(config_file, master_password)
        manager.save_credentials(channel_credentials, app_config or AppConfig())

        logger.info(f"Credential setup completed for provider {channel_credentials.provider}")
        return manager
