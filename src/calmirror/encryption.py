"""Encryption of OAuth token material at rest (Fernet, from ``cryptography``)."""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class TokenCipher:
    """Encrypts tokens before they reach the database.

    Without a key the cipher is a passthrough and tokens are stored as
    plaintext, which is logged once at construction.
    """

    def __init__(self, key: Optional[str] = None):
        self.logger = logger.getChild('cipher')
        self._fernet: Optional[Fernet] = None
        if key:
            # Malformed keys raise ValueError here
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        else:
            self.logger.warning(
                "TOKEN_ENCRYPTION_KEY not set; OAuth tokens will be stored as plaintext"
            )

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if plaintext is None or self._fernet is None:
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """Decrypt a stored token.

        Values written before a key was configured are not Fernet tokens and
        come back unchanged.
        """
        if ciphertext is None or self._fernet is None:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            return ciphertext

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()
