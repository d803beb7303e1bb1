"""
Encryption at rest for webhook endpoint secrets.

Uses Fernet (AES-128-CBC + HMAC) from the cryptography package.
"""
import structlog
from cryptography.fernet import Fernet, InvalidToken

from alertrelay.exceptions import ConfigurationError

logger = structlog.get_logger()


class SecretBox:
    """Encrypts and decrypts signing secrets with a single Fernet key."""

    def __init__(self, key: str | bytes):
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError("SECRET_ENCRYPTION_KEY is not a valid Fernet key") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    @classmethod
    def from_settings(cls, settings) -> "SecretBox":
        """
        Build from SECRET_ENCRYPTION_KEY.

        Without a configured key an ephemeral one is generated; secrets
        stored under it become unreadable after a restart.
        """
        key = settings.SECRET_ENCRYPTION_KEY
        if not key:
            logger.warning(
                "secret_encryption_key_missing",
                detail="using an ephemeral key; stored endpoint secrets will not survive a restart",
            )
            key = cls.generate_key()
        return cls(key)

    def encrypt(self, plaintext: str) -> bytes:
        return self._fernet.encrypt(plaintext.encode("utf-8"))

    def decrypt(self, token: bytes) -> str:
        try:
            return self._fernet.decrypt(token).decode("utf-8")
        except InvalidToken as e:
            raise ConfigurationError("stored secret cannot be decrypted with the current key") from e
