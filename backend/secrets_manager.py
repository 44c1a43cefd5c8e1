import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from errors import SecretError

logger = logging.getLogger(__name__)

MASK = '********'

SECRET_KEYWORDS = ('password', 'secret', 'key', 'token', 'api_key', 'private')


def looks_secret(key, value=''):
    """Heuristic used when the caller did not flag a variable explicitly"""
    haystack = f"{key} {value}".lower()
    return any(word in haystack for word in SECRET_KEYWORDS)


class SecretBox:
    """Fernet encryption of env var values, keyed from a passphrase"""

    def __init__(self, passphrase):
        if not passphrase:
            raise SecretError("Encryption key is not configured")
        key = base64.urlsafe_b64encode(hashlib.sha256(passphrase.encode()).digest())
        self._fernet = Fernet(key)

    def encrypt(self, plaintext):
        try:
            return self._fernet.encrypt(str(plaintext).encode()).decode()
        except (TypeError, ValueError) as e:
            logger.error(f"❌ Failed to encrypt secret: {str(e)}")
            raise SecretError("Failed to encrypt secret value")

    def decrypt(self, token):
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except (InvalidToken, AttributeError, ValueError) as e:
            logger.error(f"❌ Failed to decrypt secret: {type(e).__name__}")
            raise SecretError("Failed to decrypt secret value")
