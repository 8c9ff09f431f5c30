import base64
import json
import os
import secrets
from typing import Any, Dict, List, Optional

import structlog
from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()


class EncryptionKeyManager:
    """
    Derives Fernet keys for stored cloud credentials.

    - Salt comes from the environment, never hardcoded
    - Legacy keys stay readable during rotation (MultiFernet)
    - PBKDF2-SHA256 key derivation
    """

    KDF_ITERATIONS = 100000
    KDF_SALT_LENGTH = 32

    @staticmethod
    def generate_salt() -> str:
        """Generate a cryptographically secure random salt."""
        random_bytes = secrets.token_bytes(EncryptionKeyManager.KDF_SALT_LENGTH)
        return base64.b64encode(random_bytes).decode('utf-8')

    @staticmethod
    def get_salt() -> str:
        settings = get_settings()
        if settings.KDF_SALT:
            return settings.KDF_SALT

        if os.environ.get("ENVIRONMENT") in ("local", "development"):
            logger.warning(
                "kdf_salt_generated_runtime",
                warning="Set KDF_SALT, credentials encrypted now will not decrypt after restart.",
            )
            return EncryptionKeyManager.generate_salt()

        raise ConfigurationError("KDF_SALT environment variable not set", code="kdf_salt_missing")

    @staticmethod
    def derive_key(master_key: str, salt: str, iterations: int = KDF_ITERATIONS) -> bytes:
        """Derive an encryption key from master key using PBKDF2."""
        try:
            salt_bytes = base64.b64decode(salt)
        except ValueError as e:
            raise ConfigurationError(f"Invalid KDF salt format: {str(e)}", code="kdf_salt_invalid")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt_bytes,
            iterations=iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(master_key.encode()))

    @staticmethod
    def create_multi_fernet(primary_key: str, legacy_keys: Optional[List[str]] = None) -> MultiFernet:
        """Create MultiFernet for key rotation support. The primary key encrypts."""
        settings = get_settings()
        salt = EncryptionKeyManager.get_salt()
        keys = [primary_key] + list(legacy_keys or [])
        return MultiFernet([
            Fernet(EncryptionKeyManager.derive_key(key, salt, settings.KDF_ITERATIONS))
            for key in keys
        ])


def _get_fernet() -> MultiFernet:
    settings = get_settings()
    if not settings.ENCRYPTION_KEY:
        raise ConfigurationError("ENCRYPTION_KEY is not configured", code="encryption_key_missing")
    return EncryptionKeyManager.create_multi_fernet(settings.ENCRYPTION_KEY, settings.LEGACY_ENCRYPTION_KEYS)


def encrypt_credentials(credentials: Dict[str, Any]) -> str:
    """Serialize and encrypt a provider credential mapping for storage on CloudAccount."""
    return _get_fernet().encrypt(json.dumps(credentials).encode()).decode()


def decrypt_credentials(value: Optional[str]) -> Dict[str, str]:
    """
    Decrypt stored credentials.
    Undecryptable or malformed material is a ConfigurationError, the account must be reconnected.
    """
    if not value:
        raise ConfigurationError("Cloud account has no stored credentials", code="credentials_missing")

    try:
        decrypted = _get_fernet().decrypt(value.encode()).decode()
    except InvalidToken:
        logger.error("credentials_decryption_failed")
        raise ConfigurationError("Stored credentials could not be decrypted", code="credentials_undecryptable")

    try:
        credentials = json.loads(decrypted)
    except json.JSONDecodeError:
        raise ConfigurationError("Stored credentials are not a JSON object", code="credentials_malformed")
    if not isinstance(credentials, dict):
        raise ConfigurationError("Stored credentials are not a JSON object", code="credentials_malformed")

    return {str(k): v for k, v in credentials.items()}


def generate_new_key() -> str:
    """Generate a new Fernet key."""
    return Fernet.generate_key().decode()
