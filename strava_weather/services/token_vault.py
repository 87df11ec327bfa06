"""
Token Vault

Encrypts and decrypts Strava OAuth tokens so they are never stored in plaintext.

Ciphertext layout (url-safe base64):
    version (1 byte) | salt (16 bytes) | Fernet token

The Fernet token already embeds its own random IV and HMAC tag; the salt feeds a
per-call key derivation from the master key, so no key-version metadata is kept
anywhere else.
"""
import base64
import binascii
import hashlib
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..config import settings

logger = logging.getLogger(__name__)

VERSION = b"\x01"
SALT_LENGTH = 16
MASTER_ITERATIONS = 100_000
PER_CALL_ITERATIONS = 1_000
STATIC_SALT = hashlib.sha256(b"strava-weather-static-salt").digest()


class TokenDecryptionError(Exception):
    """Raised when a ciphertext cannot be authenticated or parsed."""


def _derive(secret: bytes, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    return kdf.derive(secret)


class TokenVault:
    """Authenticated symmetric encryption for OAuth credentials."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Token vault secret must not be empty")
        self._master_key = _derive(secret.encode(), STATIC_SALT, MASTER_ITERATIONS)

    def _fernet(self, salt: bytes) -> Fernet:
        key = _derive(self._master_key, salt, PER_CALL_ITERATIONS)
        return Fernet(base64.urlsafe_b64encode(key))

    def encrypt(self, plaintext: str) -> str:
        salt = os.urandom(SALT_LENGTH)
        token = self._fernet(salt).encrypt(plaintext.encode())
        return base64.urlsafe_b64encode(VERSION + salt + token).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            raw = base64.urlsafe_b64decode(ciphertext.encode())
        except (binascii.Error, ValueError) as e:
            raise TokenDecryptionError("Failed to decrypt data") from e

        if len(raw) <= 1 + SALT_LENGTH or raw[:1] != VERSION:
            raise TokenDecryptionError("Failed to decrypt data")

        salt = raw[1:1 + SALT_LENGTH]
        token = raw[1 + SALT_LENGTH:]
        try:
            return self._fernet(salt).decrypt(token).decode()
        except InvalidToken as e:
            raise TokenDecryptionError("Failed to decrypt data") from e

    def is_encrypted(self, value: Optional[str]) -> bool:
        """Best-effort format check; does not authenticate."""
        if not value:
            return False
        try:
            raw = base64.urlsafe_b64decode(value.encode())
        except (binascii.Error, ValueError):
            return False
        return raw[:1] == VERSION and len(raw) > 1 + SALT_LENGTH


_token_vault: Optional[TokenVault] = None


def get_token_vault() -> TokenVault:
    """Process-wide vault built from settings, created on first use."""
    global _token_vault
    if _token_vault is None:
        secret = settings.ENCRYPTION_KEY
        if not secret:
            if settings.is_production:
                raise RuntimeError("ENCRYPTION_KEY must be set in production")
            logger.warning("ENCRYPTION_KEY not set. Deriving token vault key from SECRET_KEY (NOT FOR PRODUCTION)")
            secret = settings.SECRET_KEY
        _token_vault = TokenVault(secret)
    return _token_vault


def reset_token_vault() -> None:
    global _token_vault
    _token_vault = None
