"""Encryption module for secure credential storage using Fernet encryption."""

from __future__ import annotations

import os
import base64
import secrets
from pathlib import Path
from typing import Final

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger


class EncryptionError(Exception):
    """Base exception for encryption operations."""
    pass


class DecryptionError(EncryptionError):
    """Raised when decryption fails."""
    pass


class EncryptionManager:
    """Encrypts the credential store with a key derived from a master password.

    A sealed blob is the random PBKDF2 salt followed by the Fernet token.
    """

    PBKDF2_ITERATIONS: Final[int] = 100_000
    SALT_LENGTH: Final[int] = 32
    KEY_LENGTH: Final[int] = 32

    def __init__(self, master_password: str) -> None:
        """Initialize encryption manager with master password.

        Raises:
            ValueError: If master password is shorter than 8 characters.
        """
        if not master_password or len(master_password.strip()) < 8:
            raise ValueError("Master password must be at least 8 characters long")

        self.master_password: str = master_password.strip()
        logger.debug("Encryption manager initialized")

    def _fernet(self, salt: bytes) -> Fernet:
        kdf: PBKDF2HMAC = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_LENGTH,
            salt=salt,
            iterations=self.PBKDF2_ITERATIONS,
        )
        key: bytes = kdf.derive(self.master_password.encode('utf-8'))
        return Fernet(base64.urlsafe_b64encode(key))

    def seal(self, plaintext: str) -> bytes:
        """Encrypt a string into a self-contained ``salt + token`` blob.

        Raises:
            EncryptionError: If encryption fails.
        """
        try:
            salt: bytes = secrets.token_bytes(self.SALT_LENGTH)
            token: bytes = self._fernet(salt).encrypt(plaintext.encode('utf-8'))
            logger.debug(f"Sealed {len(plaintext)} characters of data")
            return salt + token
        except Exception as e:
            logger.error(f"Encryption failed: {e}")
            raise EncryptionError(f"Failed to encrypt data: {e}") from e

    def unseal(self, blob: bytes) -> str:
        """Decrypt a blob produced by :meth:`seal`.

        Raises:
            DecryptionError: If the password is wrong or the blob is corrupted.
        """
        if len(blob) <= self.SALT_LENGTH:
            raise DecryptionError("Encrypted data is truncated")

        salt, token = blob[:self.SALT_LENGTH], blob[self.SALT_LENGTH:]
        try:
            return self._fernet(salt).decrypt(token).decode('utf-8')
        except InvalidToken as e:
            logger.error("Decryption failed: Invalid token (wrong password or corrupted data)")
            raise DecryptionError("Decryption failed: Invalid password or corrupted data") from e
        except UnicodeDecodeError as e:
            logger.error(f"Failed to decode decrypted data as UTF-8: {e}")
            raise DecryptionError(f"Decrypted data is not valid UTF-8: {e}") from e

    def secure_delete_file(self, file_path: Path, passes: int = 3) -> None:
        """Overwrite a file with random bytes before unlinking it."""
        if not file_path.exists():
            logger.warning(f"Cannot securely delete non-existent file: {file_path}")
            return

        file_size: int = file_path.stat().st_size
        for i in range(passes):
            with open(file_path, 'wb') as f:
                f.write(os.urandom(file_size))
                f.flush()
                os.fsync(f.fileno())
            logger.debug(f"Secure delete pass {i + 1}/{passes} completed for {file_path}")

        file_path.unlink()
        logger.info(f"File securely deleted: {file_path}")
