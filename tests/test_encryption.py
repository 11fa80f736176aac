"""Tests for the secrets-at-rest encryption service."""

import pytest
from cryptography.fernet import Fernet, InvalidToken
from app.services.encryption_service import EncryptionService


class TestEncryptionService:
    """Test suite for encryption service."""

    def setup_method(self):
        """Set up test fixtures."""
        self.service = EncryptionService(key=Fernet.generate_key())

    def test_encrypt_decrypt_string(self):
        """Test basic string encryption and decryption."""
        original = "ldap-bind-password"
        encrypted = self.service.encrypt_string(original)
        decrypted = self.service.decrypt_string(encrypted)

        assert decrypted == original
        assert encrypted != original
        assert encrypted.startswith("gAAAAA")  # Fernet token format

    def test_optional_values(self):
        """Empty values are stored as None rather than encrypted."""
        assert self.service.encrypt_optional(None) is None
        assert self.service.encrypt_optional("") is None
        assert self.service.decrypt_optional(None) is None

        encrypted = self.service.encrypt_optional("client-secret")
        assert self.service.decrypt_optional(encrypted) == "client-secret"

    def test_foreign_key_cannot_decrypt(self):
        """Ciphertext from another key is rejected, not returned garbled."""
        other = EncryptionService(key=Fernet.generate_key())
        encrypted = other.encrypt_string("totp-secret")

        with pytest.raises(InvalidToken):
            self.service.decrypt_string(encrypted)

    def test_development_key_is_stable(self):
        """Without a configured key, development derives one from SECRET_KEY."""
        first = EncryptionService()
        second = EncryptionService()
        assert second.decrypt_string(first.encrypt_string("value")) == "value"
