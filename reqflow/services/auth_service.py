"""Access-token verification. Tokens are issued by the identity provider."""

from typing import Optional

from jose import jwt, JWTError
import structlog

from reqflow.config import settings

logger = structlog.get_logger()

_public_key: Optional[str] = None


def _load_public_key() -> str:
    global _public_key
    if _public_key is None:
        with open(settings.JWT_PUBLIC_KEY_PATH, "r") as f:
            _public_key = f.read()
    return _public_key


def decode_token(token: str) -> dict:
    """Decode and verify a JWT. Raises JWTError on failure."""
    return jwt.decode(token, _load_public_key(), algorithms=[settings.JWT_ALGORITHM])


def verify_access_token(token: str) -> dict:
    payload = decode_token(token)
    if payload.get("type", "access") != "access":
        raise JWTError("Not an access token")
    if not payload.get("sub"):
        raise JWTError("Token has no subject")
    return payload
