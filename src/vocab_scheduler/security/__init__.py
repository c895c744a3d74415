"""Security package for the vocabulary delivery scheduler."""

from .encryption import EncryptionManager, DecryptionError, EncryptionError
from .credentials import AppConfig, ChannelCredentials, CredentialManager, CredentialError

__all__ = [
    # Encryption
    "EncryptionManager",
    "DecryptionError",
    "EncryptionError",
    # Credentials
    "AppConfig",
    "ChannelCredentials",
    "CredentialManager",
    "CredentialError",
]
