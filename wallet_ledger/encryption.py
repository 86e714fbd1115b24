"""
PII Field Encryption Module

Field-level codec for personal data stored on payment records (recipient
phone numbers). Ledger amounts, references and the audit trail are never
encrypted.
"""

import base64
import logging
from abc import ABC, abstractmethod
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger("wallet_ledger.encryption")

# Encryption marker prefix
ENCRYPTION_PREFIX = "ENC:"


class FieldCodec(ABC):
    """Encrypts and decrypts single string fields"""

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        pass

    @abstractmethod
    def decrypt(self, ciphertext: str) -> str:
        pass

    @staticmethod
    def is_encrypted(value: str) -> bool:
        return isinstance(value, str) and value.startswith(ENCRYPTION_PREFIX)


class NoOpFieldCipher(FieldCodec):
    """Pass-through codec for development and tests"""

    def encrypt(self, plaintext: str) -> str:
        return plaintext

    def decrypt(self, ciphertext: str) -> str:
        return ciphertext


class FieldCipher(FieldCodec):
    """Fernet codec (AES-128-CBC + HMAC-SHA256) keyed from a master secret"""

    def __init__(self, master_key: str, salt: Optional[bytes] = None):
        if not master_key:
            raise ValueError("master_key is required for field encryption")

        self.salt = salt or b'wallet_ledger_pii_salt'

        # Derive Fernet key from master key using PBKDF2
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.salt,
            iterations=100000,
        )
        derived_key = kdf.derive(master_key.encode('utf-8'))
        self.fernet = Fernet(base64.urlsafe_b64encode(derived_key))

    def encrypt(self, plaintext: str) -> str:
        token = self.fernet.encrypt(plaintext.encode('utf-8')).decode('ascii')
        return f"{ENCRYPTION_PREFIX}{token}"

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a prefixed token; unprefixed values are returned unchanged"""
        if not self.is_encrypted(ciphertext):
            return ciphertext
        try:
            token = ciphertext[len(ENCRYPTION_PREFIX):].encode('ascii')
            return self.fernet.decrypt(token).decode('utf-8')
        except InvalidToken as e:
            logger.error("Failed to decrypt field: invalid token or wrong key")
            raise ValueError("Failed to decrypt field") from e


def create_field_codec(enabled: bool, master_key: str = "") -> FieldCodec:
    """Build the configured codec"""
    if not enabled:
        return NoOpFieldCipher()
    return FieldCipher(master_key)
