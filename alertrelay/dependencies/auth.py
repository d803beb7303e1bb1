"""
Bearer token dependency.

Tokens are issued elsewhere; AlertRelay only verifies them to learn the
caller's organisation. Every route scopes its queries by the org_id
returned here.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ValidationError

from alertrelay.services.jwt_service import JWTService

# auto_error=False so a missing header is a 401 like any other bad token
security = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    """Claims AlertRelay relies on."""
    sub: str
    org_id: str
    role: str = "member"
    email: str | None = None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> TokenPayload:
    """Resolve the caller from the bearer token or fail with 401."""
    if credentials is None:
        raise _unauthorized("Missing bearer token")

    claims = JWTService().verify_token(credentials.credentials)
    if claims is None:
        raise _unauthorized("Invalid or expired token")

    try:
        return TokenPayload(**claims)
    except ValidationError:
        raise _unauthorized("Token is missing organisation context")
