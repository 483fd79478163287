"""Credential vault for provider and webhook secrets.

Secrets are stored at rest as Fernet tokens (AES-128-CBC + HMAC-SHA256).
The Fernet key is derived from the configured encryption secret with
SHA-256 so any non-empty string yields a valid 32-byte key.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: str
    last4: str


class CredentialVault:
    """Symmetric encryption of third-party credentials.

    One vault is owned by the application and injected wherever secrets are
    sealed or opened. Decrypted values are returned to the caller and never
    cached here.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise EncryptionError("Encryption key is not configured")
        derived_key = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(derived_key))

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        """Encrypt a secret.

        Args:
            plaintext: The secret to seal

        Returns:
            EncryptedSecret with the Fernet token and the last four characters
            of the plaintext (``"****"`` for very short secrets)

        Raises:
            EncryptionError: If the plaintext is empty
        """
        if not plaintext:
            raise EncryptionError("Cannot encrypt an empty secret")

        token = self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")
        return EncryptedSecret(ciphertext=token, last4=self.last4(plaintext))

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a Fernet token produced by `encrypt`.

        Raises:
            EncryptionError: If the token is empty, tampered with or was sealed
                under a different key. The message never echoes the token.
        """
        if not ciphertext:
            raise EncryptionError("Cannot decrypt an empty value")

        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            raise EncryptionError(
                "Decryption failed: invalid token. "
                "This may indicate a wrong encryption key or corrupted data."
            ) from None
        except (ValueError, UnicodeError):
            raise EncryptionError("Decryption failed: malformed ciphertext") from None

    @staticmethod
    def last4(plaintext: str) -> str:
        if len(plaintext) < 4:
            return "****"
        return plaintext[-4:]

    @staticmethod
    def generate_key() -> str:
        """Generate a random secret suitable for PULSE_ENCRYPTION_KEY."""
        return secrets.token_urlsafe(32)
