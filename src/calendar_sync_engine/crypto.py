"""Credential encryption at rest."""

from __future__ import annotations

import logging
import os
from typing import Protocol, runtime_checkable

from cryptography.fernet import Fernet, InvalidToken

from .errors import CredentialInvalidError

logger = logging.getLogger("calendar-sync-engine")


@runtime_checkable
class CredentialCipher(Protocol):
    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class FernetCipher:
    """Symmetric cipher for tokens and app passwords (Fernet, url-safe base64 key)."""

    def __init__(self, key: str | bytes):
        self._fernet = Fernet(key)

    @classmethod
    def from_env(cls, env_var: str) -> FernetCipher:
        key = os.environ.get(env_var, "")
        if not key:
            raise ValueError(f"Encryption key env var '{env_var}' not set")
        return cls(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            # Key rotated or data corrupted: the stored credential is unusable
            logger.warning("Failed to decrypt stored credential")
            raise CredentialInvalidError("Stored credential could not be decrypted") from exc
