"""At-rest protection for the remote API key kept in the setup record.

The key is stored as a Fernet token under ``remoteApiKey``. The Fernet
key is the SHA-256 of ``NOTCHLY_SECRET_KEY``, so rotating that secret
orphans the stored token and the user is asked for the API key again.
"""

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from notchly.config import settings

logger = logging.getLogger(__name__)


def _fernet(secret: str | None) -> Fernet:
    material = secret if secret is not None else settings.secret_key
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(material.encode()).digest()))


def encrypt_credential(plaintext: str, secret: str | None = None) -> str:
    return _fernet(secret).encrypt(plaintext.encode()).decode()


def decrypt_credential(ciphertext: str, secret: str | None = None) -> str:
    """Recover a stored API key, or "" if the token no longer opens.

    An empty result makes the readiness gate report "not ready".
    """
    try:
        return _fernet(secret).decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.warning(
            "Stored API key could not be decrypted (NOTCHLY_SECRET_KEY rotated?); "
            "setup will ask for it again"
        )
        return ""
