"""
Tests for the PII field codec
"""

import pytest

from wallet_ledger.encryption import (
    FieldCipher, NoOpFieldCipher, create_field_codec, ENCRYPTION_PREFIX
)


class TestFieldCipher:
    """Test Fernet field encryption"""

    def setup_method(self):
        self.cipher = FieldCipher("test-master-key")

    def test_encrypt_decrypt(self):
        encrypted = self.cipher.encrypt("0241234567")
        assert encrypted.startswith(ENCRYPTION_PREFIX)
        assert "0241234567" not in encrypted
        assert self.cipher.decrypt(encrypted) == "0241234567"

    def test_encryption_is_randomized(self):
        assert self.cipher.encrypt("0241234567") != self.cipher.encrypt("0241234567")

    def test_plain_values_pass_through_decrypt(self):
        assert self.cipher.decrypt("0241234567") == "0241234567"

    def test_wrong_key_fails(self):
        encrypted = self.cipher.encrypt("0241234567")
        with pytest.raises(ValueError, match="Failed to decrypt"):
            FieldCipher("another-key").decrypt(encrypted)

    def test_master_key_required(self):
        with pytest.raises(ValueError):
            FieldCipher("")


class TestCodecFactory:

    def test_disabled_is_noop(self):
        codec = create_field_codec(False)
        assert isinstance(codec, NoOpFieldCipher)
        assert codec.encrypt("0241234567") == "0241234567"

    def test_enabled_uses_fernet(self):
        assert isinstance(create_field_codec(True, "key"), FieldCipher)
