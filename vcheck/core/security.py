import base64
import hashlib
import json
import logging

from cryptography.fernet import Fernet
from vcheck.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


def get_fernet() -> Fernet:
    """Derives a Fernet key from the SECRET_KEY and returns a Fernet instance.

    Why: Fernet requires a 32-byte url-safe base64-encoded key. We derive this
    from the application's SECRET_KEY so the same key can decrypt blobs
    written by any process sharing the configuration.
    """
    key_bytes = settings.SECRET_KEY.encode()
    hash_object = hashlib.sha256(key_bytes)
    key_32 = base64.urlsafe_b64encode(hash_object.digest())
    return Fernet(key_32)


def encrypt_secret(plain_text: str) -> str:
    """Encrypts a string using Fernet symmetric encryption.

    Args:
        plain_text: The sensitive data to encrypt.

    Returns:
        The encrypted token as a string.
    """
    if not plain_text:
        return ""
    f = get_fernet()
    return f.encrypt(plain_text.encode()).decode()


def decrypt_secret(cipher_text: str) -> str:
    """Decrypts a Fernet token back to its original string.

    Unlike a best-effort decrypt, a bad token raises
    `cryptography.fernet.InvalidToken` so callers can tell a wrong key from
    an empty value.

    Args:
        cipher_text: The encrypted token.

    Returns:
        The original plain-text string.
    """
    if not cipher_text:
        return ""
    f = get_fernet()
    return f.decrypt(cipher_text.encode()).decode()


def encrypt_credentials(username: str, password: str) -> str:
    """Encrypts a vCenter username/password pair into a single opaque blob."""
    if not username or not username.strip() or not password or not password.strip():
        raise ValueError("Username and password cannot be empty")
    payload = json.dumps({"username": username, "password": password})
    return encrypt_secret(payload)
