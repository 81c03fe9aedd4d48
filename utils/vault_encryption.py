"""
Vault secret encryption
Encrypts license keys at rest with Fernet. The configured passphrase is
stretched with SHA-256 into a Fernet key, so any non-empty string works as
VAULT_ENCRYPTION_KEY.
"""

import base64
import hashlib
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config import Config

logger = logging.getLogger(__name__)


class VaultEncryption:
    """Encryption and decryption of vault secrets"""

    def __init__(self, passphrase: Optional[str] = None):
        self.fernet = Fernet(self._derive_key(passphrase))

    def _derive_key(self, passphrase: Optional[str]) -> bytes:
        passphrase = passphrase or Config.VAULT_ENCRYPTION_KEY or os.environ.get("VAULT_ENCRYPTION_KEY")
        if not passphrase:
            if Config.IS_PRODUCTION:
                raise RuntimeError("VAULT_ENCRYPTION_KEY environment variable is required")
            # Generate new key if not found
            logger.warning("Generating ephemeral vault encryption key - stored license keys will not survive restart")
            generated = Fernet.generate_key().decode()
            os.environ["VAULT_ENCRYPTION_KEY"] = generated
            passphrase = generated
        digest = hashlib.sha256(passphrase.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest)

    def encrypt(self, secret: str) -> bytes:
        if not secret:
            raise ValueError("secret must be non-empty")
        return self.fernet.encrypt(secret.encode("utf-8"))

    def decrypt(self, token: bytes) -> str:
        try:
            return self.fernet.decrypt(bytes(token)).decode("utf-8")
        except InvalidToken:
            logger.error("❌ Vault secret decryption failed - key mismatch or corrupted ciphertext")
            raise


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
