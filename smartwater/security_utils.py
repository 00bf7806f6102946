"""
Token encryption helpers
OAuth secrets are stored Fernet-encrypted, keyed from SECRET_KEY
"""

import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import SECRET_KEY

logger = logging.getLogger(__name__)

MASK = "********"


def _build_cipher(secret_key: str) -> Fernet:
    # Fernet needs 32 url-safe base64 bytes; SECRET_KEY is an arbitrary string
    digest = hashlib.sha256(secret_key.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


cipher_suite = _build_cipher(SECRET_KEY)


def encrypt_token(value: Optional[str]) -> Optional[str]:
    """Encrypt a token for storage"""
    if not value:
        return None
    return cipher_suite.encrypt(value.encode()).decode()


def decrypt_token(encrypted: Optional[str]) -> Optional[str]:
    """Decrypt a stored token; None when missing or unreadable"""
    if not encrypted:
        return None
    try:
        return cipher_suite.decrypt(encrypted.encode()).decode()
    except InvalidToken:
        logger.error("❌ Stored token could not be decrypted (SECRET_KEY changed?)")
        return None


def mask_secret(value: Optional[str]) -> Optional[str]:
    return MASK if value else None
