import json
import logging
from typing import Optional

from cryptography.fernet import InvalidToken
from pydantic import ValidationError

from vcheck.core.security import decrypt_secret
from vcheck.schemas import VCenterCredentials

logger = logging.getLogger(__name__)


class CredentialService:
    """Turns the encrypted credential blob stored on a vCenter into a username/password pair."""

    def decrypt(self, encrypted_credentials: Optional[str]) -> Optional[VCenterCredentials]:
        """Decrypts a vCenter credential blob.

        Why: Engines decrypt just-in-time for every execution and must be able
        to short-circuit with a clear failure instead of an exception when the
        blob is missing, was written with another key, or holds garbage.

        Args:
            encrypted_credentials: The Fernet token stored on the vCenter.

        Returns:
            The credentials, or None when they cannot be recovered.
        """
        if not encrypted_credentials or not encrypted_credentials.strip():
            logger.warning("No encrypted credentials configured")
            return None
        try:
            payload = json.loads(decrypt_secret(encrypted_credentials))
            credentials = VCenterCredentials(**payload)
        except InvalidToken:
            logger.error("Failed to decrypt credentials - invalid token or wrong secret key")
            return None
        except (ValueError, TypeError, ValidationError) as e:
            logger.error(f"Failed to decrypt credentials - malformed payload: {type(e).__name__}")
            return None

        if not credentials.is_valid:
            logger.error("Decrypted credentials are incomplete")
            return None
        logger.debug(f"Successfully decrypted credentials for user: {credentials.username}")
        return credentials
