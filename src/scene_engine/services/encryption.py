"""Encryption utilities for credential storage.

Uses Fernet symmetric encryption with a master key from settings.
"""

from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from scene_engine.config import settings
from scene_engine.errors import EncryptionError
from scene_engine.logging import get_logger

logger = get_logger(__name__)

# Module-level storage for the generated dev key (persists for process lifetime)
_generated_dev_key: str | None = None


def _get_master_key() -> bytes:
    """Get the master encryption key.

    The key must be a valid 32-byte base64-encoded Fernet key. Without one,
    production refuses to start and development generates a per-process key.
    """
    global _generated_dev_key

    key = settings.encryption_master_key

    if not key:
        if settings.environment == "production":
            raise EncryptionError(
                "ENCRYPTION_MASTER_KEY is required in production. "
                "Generate one with: scene-engine credentials generate-key"
            )

        if _generated_dev_key is None:
            _generated_dev_key = Fernet.generate_key().decode()
            logger.warning(
                "encryption_using_generated_key",
                hint="Set ENCRYPTION_MASTER_KEY in .env so stored credentials survive restarts",
            )
        key = _generated_dev_key

    return key.encode()


@lru_cache(maxsize=1)
def get_fernet() -> Fernet:
    """Get a cached Fernet instance with the master key."""
    try:
        return Fernet(_get_master_key())
    except EncryptionError:
        raise
    except Exception as e:
        raise EncryptionError(f"Failed to initialize encryption: {e}") from e


def encrypt_secret(secret: str) -> str:
    """Encrypt an API key for storage.

    Raises:
        EncryptionError: If the secret is empty or encryption fails.
    """
    if not secret:
        raise EncryptionError("Cannot encrypt empty secret")

    try:
        return get_fernet().encrypt(secret.encode()).decode()
    except Exception as e:
        raise EncryptionError(f"Failed to encrypt secret: {e}") from e


def decrypt_secret(encrypted: str) -> str:
    """Decrypt a stored API key.

    Raises:
        EncryptionError: If decryption fails (invalid key or corrupted data).
    """
    if not encrypted:
        raise EncryptionError("Cannot decrypt empty secret")

    try:
        return get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken as e:
        raise EncryptionError(
            "Failed to decrypt secret: invalid key or corrupted data. "
            "This may happen if ENCRYPTION_MASTER_KEY changed."
        ) from e


def generate_master_key() -> str:
    """Generate a new Fernet-compatible master key."""
    return Fernet.generate_key().decode()


def mask_secret(secret: str, visible: int = 4) -> str:
    """Mask a secret for display, keeping only its last ``visible`` characters."""
    if len(secret) <= visible:
        return "*" * len(secret)
    return "*" * (len(secret) - visible) + secret[-visible:]
