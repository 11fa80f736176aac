"""Encryption of stored secrets using Fernet symmetric encryption.

Covers LDAP bind passwords, SSO client secrets and TOTP shared secrets.
"""

from typing import Optional
import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken
from azure.keyvault.secrets import SecretClient
from azure.identity import DefaultAzureCredential

from app.config import settings

logger = logging.getLogger(__name__)


class EncryptionService:
    """Service for encrypting and decrypting secrets at rest."""

    def __init__(self, key: Optional[bytes] = None):
        self._key = key
        self._fernet = None

    @property
    def fernet(self) -> Fernet:
        """Lazy load encryption key and create Fernet instance."""
        if self._fernet is None:
            if self._key is None:
                self._key = self._get_encryption_key()
            self._fernet = Fernet(self._key)
        return self._fernet

    def _get_encryption_key(self) -> bytes:
        """Get encryption key from environment, a development derivation, or Azure Key Vault."""
        # Priority 1: Direct environment variable
        if settings.CONFIG_ENCRYPTION_KEY:
            logger.info("Using configuration encryption key from environment variable")
            return settings.CONFIG_ENCRYPTION_KEY.encode()

        # Priority 2: Development mode, derived from SECRET_KEY
        if settings.ENVIRONMENT == "development":
            logger.warning("Using development encryption key - not for production!")
            key_material = hashlib.sha256(settings.SECRET_KEY.encode()).digest()
            return base64.urlsafe_b64encode(key_material)

        # Priority 3: Azure Key Vault
        if settings.AZURE_KEY_VAULT_URL:
            try:
                credential = DefaultAzureCredential()
                client = SecretClient(
                    vault_url=settings.AZURE_KEY_VAULT_URL,
                    credential=credential
                )
                secret = client.get_secret(settings.ENCRYPTION_KEY_NAME)
                logger.info("Using configuration encryption key from Azure Key Vault")
                return secret.value.encode()
            except Exception as e:
                logger.error(f"Failed to get encryption key from Key Vault: {e}")
                raise

        raise ValueError(
            "No configuration encryption key available. Set CONFIG_ENCRYPTION_KEY "
            "or configure AZURE_KEY_VAULT_URL with the encryption key secret."
        )

    def encrypt_string(self, plaintext: str) -> str:
        """Encrypt a string value."""
        try:
            return self.fernet.encrypt(plaintext.encode()).decode()
        except Exception as e:
            logger.error(f"Encryption error: {e}")
            raise

    def decrypt_string(self, ciphertext: str) -> str:
        """Decrypt a string value. Raises InvalidToken for tampered or foreign ciphertext."""
        try:
            return self.fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Decryption failed: ciphertext was not produced with the current key")
            raise

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        return self.encrypt_string(plaintext) if plaintext else None

    def decrypt_optional(self, ciphertext: Optional[str]) -> Optional[str]:
        return self.decrypt_string(ciphertext) if ciphertext else None


_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Get or create the shared encryption service."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service
