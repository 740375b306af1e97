"""
Token encryption - encrypt / decrypt OAuth tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
The key is read from ``settings.token_encryption_key``
(env var: ``TOKEN_ENCRYPTION_KEY``).

If no key is configured, encryption is disabled and tokens are stored
as plaintext (with a startup warning). Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator

from app.config import settings

logger = logging.getLogger(__name__)


class TokenCipher:
    """Fernet wrapper that degrades to plaintext when no key is set."""

    def __init__(self, key: Optional[str]):
        self._fernet: Optional[Fernet] = None
        if key:
            self._fernet = Fernet(key.encode())

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, plaintext: str) -> str:
        if self._fernet is None:
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a stored token.

        Tokens written before encryption was enabled are not valid Fernet
        tokens and are returned as-is.
        """
        if self._fernet is None:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            return ciphertext


_cipher: Optional[TokenCipher] = None


def get_cipher() -> TokenCipher:
    """Lazy-initialise the cipher once."""
    global _cipher
    if _cipher is None:
        _cipher = TokenCipher(settings.token_encryption_key)
        if _cipher.enabled:
            logger.info("Token encryption enabled (Fernet)")
        else:
            logger.warning(
                "TOKEN_ENCRYPTION_KEY not set - OAuth tokens will be stored as plaintext"
            )
    return _cipher


class EncryptedText(TypeDecorator):
    """Text column that is transparently encrypted with the token cipher."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return get_cipher().encrypt(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return get_cipher().decrypt(value)
