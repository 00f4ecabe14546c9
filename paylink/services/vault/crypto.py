"""Authenticated symmetric encryption for provider credentials at rest.

Keys come from `ENCRYPTION_KEYS` (comma separated Fernet keys). The first key
encrypts; every listed key may decrypt, so keys can be rotated by prepending a
new one and re-encrypting at leisure. Missing or malformed key material fails
every call; nothing is ever passed through unencrypted.
"""

import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from paylink.common.config import settings
from paylink.common.errors import ConfigurationError, IntegrityError


class CredentialVault:
    def __init__(self, keys: str | None = None) -> None:
        self._keys = keys
        self._fernet: MultiFernet | None = None

    def _cipher(self) -> MultiFernet:
        if self._fernet is None:
            raw = self._keys if self._keys is not None else settings.encryption_keys
            keys = [key.strip() for key in (raw or "").split(",") if key.strip()]
            if not keys:
                raise ConfigurationError("no credential encryption key configured")
            try:
                self._fernet = MultiFernet([Fernet(key) for key in keys])
            except (ValueError, TypeError) as exc:
                # The key itself must never show up in the message.
                raise ConfigurationError("credential encryption key is malformed") from exc
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        return self._cipher().encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        cipher = self._cipher()
        try:
            return cipher.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError):
            raise IntegrityError("credential ciphertext failed authentication") from None

    def encrypt_credentials(self, credentials: dict[str, Any]) -> str:
        return self.encrypt(json.dumps(credentials, sort_keys=True, separators=(",", ":")))

    def decrypt_credentials(self, ciphertext: str) -> dict[str, Any]:
        plaintext = self.decrypt(ciphertext)
        try:
            data = json.loads(plaintext)
        except ValueError:
            raise IntegrityError("decrypted credentials are not a JSON object") from None
        if not isinstance(data, dict):
            raise IntegrityError("decrypted credentials are not a JSON object")
        return data

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt under the current primary key."""

        try:
            return self._cipher().rotate(ciphertext.encode("ascii")).decode("ascii")
        except (InvalidToken, UnicodeError):
            raise IntegrityError("credential ciphertext failed authentication") from None
