"""
Tests for credential encryption and log redaction.
"""

import pytest

from app.shared.core.exceptions import ConfigurationError
from app.shared.core.logging import credential_redactor
from app.shared.core.security import EncryptionKeyManager, decrypt_credentials, encrypt_credentials


class TestCredentialEncryption:
    def test_round_trip(self):
        credentials = {"accessKeyId": "AKIA", "secretAccessKey": "secret"}
        token = encrypt_credentials(credentials)

        assert "secret" not in token
        assert decrypt_credentials(token) == credentials

    def test_missing_material(self):
        with pytest.raises(ConfigurationError) as excinfo:
            decrypt_credentials(None)
        assert excinfo.value.code == "credentials_missing"

    def test_tampered_material(self):
        with pytest.raises(ConfigurationError) as excinfo:
            decrypt_credentials("gAAAAABnot-a-real-token")
        assert excinfo.value.code == "credentials_undecryptable"

    def test_legacy_key_still_decrypts(self):
        """Values written under a rotated-out key stay readable."""
        legacy = EncryptionKeyManager.create_multi_fernet("legacy-encryption-key-0123456789abcdef")
        token = legacy.encrypt(b'{"token": "t"}').decode()

        rotated = EncryptionKeyManager.create_multi_fernet(
            "new-encryption-key-0123456789abcdef0",
            ["legacy-encryption-key-0123456789abcdef"],
        )
        assert rotated.decrypt(token.encode()) == b'{"token": "t"}'

    def test_invalid_salt(self):
        with pytest.raises(ConfigurationError):
            EncryptionKeyManager.derive_key("key", "!!not-base64!!", iterations=1000)


class TestCredentialRedactor:
    def test_top_level_fields(self):
        event = credential_redactor(None, "info", {"event": "x", "secretAccessKey": "s", "provider": "AWS"})
        assert event["secretAccessKey"] == "[REDACTED]"
        assert event["provider"] == "AWS"

    def test_nested_containers(self):
        event = credential_redactor(None, "info", {"event": "x", "payload": {"token": "t", "cloudAccountId": "a"}})
        assert event["payload"] == {"token": "[REDACTED]", "cloudAccountId": "a"}
