"""
Symmetric payload encryption with Fernet (AES-128-CBC + HMAC-SHA256).

The Fernet key is derived from ENCRYPTION_KEY with PBKDF2 so operators can
configure any passphrase.
"""

import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from sevaguard.core.exceptions import ConfigurationError, SecurityError

logger = logging.getLogger(__name__)

# Fixed salt: the derived key must be stable across restarts and instances
_KDF_SALT = b"sevaguard-payload-encryption"
_KDF_ITERATIONS = 390000


def derive_key(passphrase: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


class PayloadCipher:
    """Encrypt/decrypt strings for storage"""

    def __init__(self, encryption_key: Optional[str]):
        if not encryption_key:
            raise ConfigurationError("ENCRYPTION_KEY is not configured", component="encryption")
        self._cipher = Fernet(derive_key(encryption_key))

    def encrypt(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeEncodeError) as e:
            logger.warning("Rejected undecryptable payload")
            raise SecurityError("Payload could not be decrypted", error_type="decryption") from e
