"""
Bearer token verification

Access tokens are minted by the identity service and shared with this
backend through the JWT secret. Both the push channel handshake and the
REST surface resolve the caller from the `sub` claim.
"""

from datetime import timedelta
from typing import Optional

from jose import JWTError, jwt

from kindred.core.config import settings
from kindred.core.time import utcnow

ACCESS_TOKEN_TYPE = "access"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Mint an access token.

    Used by local tooling and tests; production tokens come from the
    identity service with the same claims.
    """
    now = utcnow()
    claims = {**data, "iat": now, "exp": now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))}
    claims.setdefault("type", ACCESS_TOKEN_TYPE)
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def verify_token(token: Optional[str]) -> Optional[str]:
    """
    Return the user id of a valid access token, None otherwise.

    Refresh tokens share the secret, so the `type` claim is checked when present.
    """
    if not token:
        return None
    payload = decode_token(token)
    if payload is None or payload.get("type", ACCESS_TOKEN_TYPE) != ACCESS_TOKEN_TYPE:
        return None
    user_id = payload.get("sub")
    return str(user_id) if user_id else None
