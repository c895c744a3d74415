#!/usr/bin/env python3
"""Tests for encrypted configuration storage and settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from vocab_scheduler.config.settings import load_settings
from vocab_scheduler.scheduler.delivery_settings import DuplicateTimePolicy
from vocab_scheduler.security.credentials import (
    AppConfig,
    ChannelCredentials,
    CredentialError,
    CredentialManager,
)
from vocab_scheduler.security.encryption import DecryptionError, EncryptionManager

PASSWORD: str = "correct horse battery"
TWILIO: ChannelCredentials = ChannelCredentials("twilio", "AC123", "secret-token", "+15005550006")


def test_seal_and_unseal() -> None:
    manager = EncryptionManager(PASSWORD)
    blob = manager.seal('{"token": "secret-token"}')

    assert b"secret-token" not in blob
    assert manager.unseal(blob) == '{"token": "secret-token"}'
    # A fresh salt per seal gives different ciphertexts
    assert manager.seal("same") != manager.seal("same")

    with pytest.raises(DecryptionError):
        EncryptionManager("another password").unseal(blob)
    with pytest.raises(DecryptionError):
        manager.unseal(b"short")
    with pytest.raises(ValueError):
        EncryptionManager("short")


def test_secure_delete(tmp_path: Path) -> None:
    target = tmp_path / "secret.bin"
    target.write_bytes(b"secret-token")
    EncryptionManager(PASSWORD).secure_delete_file(target)
    assert not target.exists()


def test_credentials_roundtrip(tmp_path: Path) -> None:
    """Test saving and reloading the encrypted configuration."""
    config_file = tmp_path / "config" / "credentials.enc"
    app_config = AppConfig(database_path=str(tmp_path / "vocab.db"), timezone="Europe/London")

    CredentialManager.setup_wizard(config_file, PASSWORD, TWILIO, app_config)
    assert config_file.exists()
    assert b"secret-token" not in config_file.read_bytes()

    credentials, loaded_config = CredentialManager(config_file, PASSWORD).load_credentials()
    assert credentials == TWILIO
    assert loaded_config == app_config


def test_wrong_password(tmp_path: Path) -> None:
    config_file = tmp_path / "credentials.enc"
    CredentialManager.setup_wizard(config_file, PASSWORD, TWILIO)

    wrong = CredentialManager(config_file, "not the password")
    assert not wrong.verify_master_password()
    with pytest.raises(CredentialError, match="Wrong password"):
        wrong.load_credentials()


def test_missing_config(tmp_path: Path) -> None:
    with pytest.raises(CredentialError):
        CredentialManager(tmp_path / "missing.enc", PASSWORD).load_credentials()


def test_updates_and_delete(tmp_path: Path) -> None:
    config_file = tmp_path / "credentials.enc"
    manager = CredentialManager.setup_wizard(config_file, PASSWORD, TWILIO)

    whatsapp = ChannelCredentials("whatsapp", phone_number_id="10987", access_token="token-xyz")
    manager.update_channel_credentials(whatsapp)
    manager.update_app_config(AppConfig(batch_limit=50))

    credentials, app_config = CredentialManager(config_file, PASSWORD).load_credentials()
    assert credentials == whatsapp
    assert app_config.batch_limit == 50

    manager.delete_config()
    assert not manager.config_exists()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"provider": "pigeon"},
        {"provider": "twilio", "account_sid": "AC1", "auth_token": "tok"},
        {"provider": "whatsapp", "phone_number_id": "1"},
        {"provider": "twilio", "account_sid": "AC1", "auth_token": "tok", "from_number": "+1", "timeout_seconds": 0},
    ],
)
def test_invalid_channel_credentials(kwargs) -> None:
    with pytest.raises(ValueError):
        ChannelCredentials(**kwargs)


def test_invalid_app_config() -> None:
    with pytest.raises(ValueError):
        AppConfig(duplicate_time_policy="shuffle")
    with pytest.raises(ValueError):
        AppConfig(auto_window_start_hour=10, auto_window_end_hour=9)
    with pytest.raises(ValueError):
        AppConfig(stale_after_minutes=-5)


def test_load_settings_builds_scheduler_config(tmp_path: Path) -> None:
    config_file = tmp_path / "credentials.enc"
    app_config = AppConfig(
        database_path=str(tmp_path / "vocab.db"),
        timezone="America/New_York",
        auto_window_start_hour=8,
        auto_window_end_hour=20,
        duplicate_time_policy="allow",
        stale_after_minutes=90,
        log_level="DEBUG"
    )
    CredentialManager.setup_wizard(config_file, PASSWORD, TWILIO, app_config)

    settings = load_settings(config_file, PASSWORD)

    assert settings.database_path == tmp_path / "vocab.db"
    assert settings.log_level == "DEBUG"
    scheduler_config = settings.scheduler_config
    assert scheduler_config.timezone == "America/New_York"
    assert scheduler_config.auto_window_start_hour == 8
    assert scheduler_config.duplicate_policy is DuplicateTimePolicy.ALLOW
    assert scheduler_config.stale_after_minutes == 90

    with pytest.raises(CredentialError):
        load_settings(config_file, "not the password")
