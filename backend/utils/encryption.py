"""
Encryption utilities for registry credential tokens.

Registry tokens are stored Fernet-encrypted and decrypted only just before a
registry request needs them. The key lives next to the database in the data
volume and is generated on first use.

Security Note:
    This protects against database dumps/exports, but does NOT protect against
    full container compromise. Anyone holding both the database AND the key
    can decrypt the tokens.
"""

import os
import logging
from cryptography.fernet import Fernet, InvalidToken

from config.paths import ENCRYPTION_KEY_PATH

logger = logging.getLogger(__name__)

KEY_PATH = ENCRYPTION_KEY_PATH


def _get_or_create_key() -> bytes:
    """
    Load the encryption key, generating and saving a new one if missing.

    Raises:
        IOError: If key file cannot be read or created
    """
    if os.path.exists(KEY_PATH):
        try:
            with open(KEY_PATH, 'rb') as f:
                return f.read()
        except OSError as e:
            logger.error(f"Failed to read encryption key from {KEY_PATH}: {e}")
            raise IOError(f"Cannot read encryption key: {e}")

    try:
        key = Fernet.generate_key()
        os.makedirs(os.path.dirname(KEY_PATH) or '.', exist_ok=True)
        with open(KEY_PATH, 'wb') as f:
            f.write(key)
        # Owner read/write only
        os.chmod(KEY_PATH, 0o600)
        logger.info(f"Generated new encryption key at {KEY_PATH}")
        return key
    except OSError as e:
        logger.error(f"Failed to generate or save encryption key: {e}")
        raise IOError(f"Cannot create encryption key: {e}")


def encrypt_token(plaintext: str) -> str:
    """
    Encrypt a registry token for storage.

    Raises:
        ValueError: If plaintext is empty
        IOError: If the key cannot be loaded
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty token")

    fernet = Fernet(_get_or_create_key())
    return fernet.encrypt(plaintext.encode('utf-8')).decode('ascii')


def decrypt_token(encrypted: str) -> str:
    """
    Decrypt a stored registry token.

    Raises:
        ValueError: If the ciphertext is empty or was produced with another key
        IOError: If the key cannot be loaded
    """
    if not encrypted:
        raise ValueError("Cannot decrypt empty string")

    fernet = Fernet(_get_or_create_key())
    try:
        return fernet.decrypt(encrypted.encode('ascii')).decode('utf-8')
    except InvalidToken:
        logger.error("Failed to decrypt registry token: invalid token (key mismatch or corrupted data)")
        raise ValueError("Cannot decrypt registry token: invalid encryption token")
