"""
Bearer token verification.

Tokens are minted by the platform's identity service with the shared
JWT_SECRET_KEY; AlertRelay only decodes them to read the org_id claim.
"""
from jose import JWTError, jwt

from alertrelay.config import settings


class JWTService:
    def __init__(self, secret_key: str | None = None, algorithm: str | None = None):
        self.secret_key = secret_key or settings.JWT_SECRET_KEY
        self.algorithm = algorithm or settings.JWT_ALGORITHM

    def verify_token(self, token: str) -> dict | None:
        """Decoded claims, or None for a bad signature, expiry or malformed token."""
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            return None
