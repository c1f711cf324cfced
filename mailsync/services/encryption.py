import logging
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from mailsync.config import settings
from mailsync.exceptions import CryptoError

logger = logging.getLogger(__name__)


class EncryptionService:
    """Credential vault for OAuth tokens, client secrets and server passwords"""

    def __init__(self, key: Optional[str] = None, legacy_key: Optional[str] = None):
        self.cipher = Fernet((key or settings.FERNET_KEY).encode())
        self.legacy_key = legacy_key if legacy_key is not None else settings.LEGACY_ENCRYPTION_KEY

    def encrypt(self, data: str) -> str:
        """Encrypt a string and return base64 encoded encrypted data"""
        return self.cipher.encrypt(data.encode()).decode()

    def decrypt(self, encrypted_data: str) -> str:
        """Decrypt base64 encoded encrypted data and return original string"""
        try:
            return self.cipher.decrypt(encrypted_data.encode()).decode()
        except (InvalidToken, ValueError, TypeError, AttributeError) as e:
            raise CryptoError("Stored credential could not be decrypted") from e

    def decrypt_legacy(self, encrypted_hex: str) -> str:
        """Decrypt a hex value written by the old AES-256-CTR zero-IV scheme"""
        if not self.legacy_key:
            raise CryptoError("No legacy encryption key configured")
        key = self.legacy_key.encode()
        if len(key) != 32:
            raise CryptoError("Legacy encryption key must be 32 bytes")
        try:
            decryptor = Cipher(algorithms.AES(key), modes.CTR(b"\x00" * 16)).decryptor()
            plaintext = decryptor.update(bytes.fromhex(encrypted_hex)) + decryptor.finalize()
            return plaintext.decode()
        except (ValueError, UnicodeDecodeError) as e:
            raise CryptoError("Legacy credential could not be decrypted") from e

    def migrate_legacy(self, encrypted_hex: str) -> str:
        """Re-encrypt a legacy value under the current key"""
        return self.encrypt(self.decrypt_legacy(encrypted_hex))


encryption_service = EncryptionService()
