"""
Exchange credential encryption.

Stored credentials are base64 blobs laid out as
``salt(64) | iv(16) | tag(16) | ciphertext``: AES-256-GCM with a key derived
by PBKDF2-HMAC-SHA512 (100k iterations) from the secret in
``ENCRYPTION_SECRET``.
"""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.exceptions import AccountConfigurationError

logger = logging.getLogger(__name__)

SALT_LEN = 64
IV_LEN = 16
TAG_LEN = 16
KEY_LEN = 32
PBKDF2_ITERATIONS = 100_000
DEFAULT_SECRET_ENV = "ENCRYPTION_SECRET"


def _derive_key(secret: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LEN,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def load_secret(env_var: str = DEFAULT_SECRET_ENV, account_id: str = "*") -> str:
    secret = os.getenv(env_var)
    if not secret:
        raise AccountConfigurationError(account_id, f"encryption secret not set (env {env_var})")
    return secret


def encrypt_secret(plaintext: str, secret: str) -> str:
    salt = os.urandom(SALT_LEN)
    iv = os.urandom(IV_LEN)
    sealed = AESGCM(_derive_key(secret, salt)).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LEN], sealed[-TAG_LEN:]
    return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")


def decrypt_secret(blob: Optional[str], secret: str, account_id: str = "*") -> Optional[str]:
    """Decrypt one stored credential. Empty values decrypt to None."""
    if not blob:
        return None
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AccountConfigurationError(account_id, f"credential is not valid base64: {exc}") from exc
    if len(raw) < SALT_LEN + IV_LEN + TAG_LEN:
        raise AccountConfigurationError(account_id, "credential blob too short")

    salt = raw[:SALT_LEN]
    iv = raw[SALT_LEN:SALT_LEN + IV_LEN]
    tag = raw[SALT_LEN + IV_LEN:SALT_LEN + IV_LEN + TAG_LEN]
    ciphertext = raw[SALT_LEN + IV_LEN + TAG_LEN:]
    try:
        plain = AESGCM(_derive_key(secret, salt)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise AccountConfigurationError(account_id, "credential decryption failed (wrong secret?)") from exc
    return plain.decode("utf-8")


__all__ = ["decrypt_secret", "encrypt_secret", "load_secret"]
