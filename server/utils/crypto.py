# server/utils/crypto.py
from __future__ import annotations
import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken


class PasswordCipher:
    """Reversible encryption for stored target passwords."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("secret must not be empty")
        # any passphrase works; Fernet wants 32 url-safe base64 bytes
        key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("stored password cannot be decrypted with the configured secret") from exc
