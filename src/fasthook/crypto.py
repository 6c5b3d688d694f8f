"""Encryption of endpoint signing secrets at rest."""

import base64
import hashlib

from cryptography.fernet import Fernet

# Marks values written by encrypt_secret so that plaintext rows stored before
# an encryption key was configured keep working.
ENCRYPTED_PREFIX = "enc:"


def _derive_fernet_key(key: str) -> bytes:
    """Derive a Fernet-compatible key from a user-provided key.

    Fernet requires a 32-byte URL-safe base64-encoded key.
    We hash the user's key to ensure consistent length.
    """
    key_bytes = hashlib.sha256(key.encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


def is_encrypted(value: str) -> bool:
    """Check whether a stored value was produced by encrypt_secret."""
    return value.startswith(ENCRYPTED_PREFIX)


def encrypt_secret(plaintext: str, key: str | None) -> str:
    """Encrypt a signing secret for storage.

    Args:
        plaintext: The secret to encrypt.
        key: The encryption key. If None, returns plaintext unchanged (passthrough).

    Returns:
        Prefixed Fernet token, or the original value if no key is configured.
    """
    if key is None:
        return plaintext

    token = Fernet(_derive_fernet_key(key)).encrypt(plaintext.encode())
    return ENCRYPTED_PREFIX + token.decode()


def decrypt_secret(stored: str, key: str | None) -> str:
    """Decrypt a stored signing secret.

    Values without the encryption prefix are returned unchanged.

    Raises:
        ValueError: If the value is encrypted but no key is configured.
        cryptography.fernet.InvalidToken: If decryption fails (wrong key or corrupted data).
    """
    if not is_encrypted(stored):
        return stored
    if key is None:
        raise ValueError("Secret is encrypted but no encryption key is configured")

    token = stored[len(ENCRYPTED_PREFIX) :]
    return Fernet(_derive_fernet_key(key)).decrypt(token.encode()).decode()
