"""
At-rest encryption for stored OAuth tokens.

agency_integrations only ever holds Fernet ciphertext; plaintext tokens live
in memory for the duration of one request.
"""

import os
from typing import Optional

from cryptography.fernet import Fernet

ENCRYPTION_KEY_ENV = "INTEGRATION_ENCRYPTION_KEY"


class TokenCipher:
    """
    Usage:
        cipher = TokenCipher()  # key from INTEGRATION_ENCRYPTION_KEY
        stored = cipher.encrypt(access_token)
        access_token = cipher.decrypt(stored)
    """

    def __init__(self, key: Optional[str] = None):
        key = key or os.getenv(ENCRYPTION_KEY_ENV)
        if not key:
            raise ValueError(f"{ENCRYPTION_KEY_ENV} is not set (see TokenCipher.generate_key)")
        self._fernet = Fernet(key)

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode("utf-8")).decode("ascii")

    def decrypt(self, stored: str) -> str:
        # InvalidToken propagates: a rotated key means every row needs a reconnect
        return self._fernet.decrypt(stored.encode("ascii")).decode("utf-8")

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")


_token_cipher: Optional[TokenCipher] = None


def get_token_cipher() -> TokenCipher:
    global _token_cipher
    if _token_cipher is None:
        _token_cipher = TokenCipher()
    return _token_cipher
