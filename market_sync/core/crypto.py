"""
Fernet encryption for provider credentials kept outside the process
(the StockX access token shared between workers through Redis).
"""
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from market_sync.core.config import get_settings
from market_sync.core.exceptions import ConfigurationError


class EncryptionManager:
    """Manages encryption/decryption of sensitive data using Fernet."""

    def __init__(self, key: Optional[str] = None):
        key_str = key or get_settings().FERNET_KEY
        if not key_str:
            raise ConfigurationError("FERNET_KEY not configured", setting="FERNET_KEY")

        try:
            self.fernet = Fernet(key_str.encode("utf-8"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid Fernet key format: {e}", setting="FERNET_KEY") from e

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext string."""
        return self.fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> Optional[str]:
        """Decrypt a ciphertext string. Returns None for tampered or foreign tokens."""
        try:
            return self.fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            return None


_encryption_manager: Optional[EncryptionManager] = None


def get_encryption_manager() -> Optional[EncryptionManager]:
    """Get the global encryption manager, or None when no key is configured."""
    global _encryption_manager
    if _encryption_manager is None and get_settings().FERNET_KEY:
        _encryption_manager = EncryptionManager()
    return _encryption_manager
