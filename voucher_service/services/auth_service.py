"""
Access-token handling. Tokens are issued by the identity provider; this
service only verifies them. create_access_token exists for operators and
tests that need a token signed with the same key.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError
import structlog

from voucher_service.config import settings

logger = structlog.get_logger()

_key_cache: dict[str, str] = {}


def _read_key(path: Optional[str]) -> str:
    if not path:
        raise JWTError("JWT key path is not configured")
    if path not in _key_cache:
        with open(path, "r") as f:
            _key_cache[path] = f.read()
    return _key_cache[path]


def _uses_shared_secret() -> bool:
    return settings.JWT_ALGORITHM.upper().startswith("HS")


def _signing_key() -> str:
    if _uses_shared_secret():
        if not settings.JWT_SECRET_KEY:
            raise JWTError("JWT_SECRET_KEY is not configured")
        return settings.JWT_SECRET_KEY
    return _read_key(settings.JWT_PRIVATE_KEY_PATH)


def _verification_key() -> str:
    if _uses_shared_secret():
        if not settings.JWT_SECRET_KEY:
            raise JWTError("JWT_SECRET_KEY is not configured")
        return settings.JWT_SECRET_KEY
    return _read_key(settings.JWT_PUBLIC_KEY_PATH)


def create_access_token(
    user_id: str,
    tenant_id: str,
    role: str,
    email: str,
    name: Optional[str] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "tenant_id": str(tenant_id),
        "role": role,
        "email": email,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        "type": "access",
    }
    if name:
        claims["name"] = name
    return jwt.encode(claims, _signing_key(), algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token. Raises JWTError on failure."""
    return jwt.decode(token, _verification_key(), algorithms=[settings.JWT_ALGORITHM])


def verify_access_token(token: str) -> dict:
    """Verify an access token and return its claims."""
    payload = decode_token(token)
    if payload.get("type") != "access":
        raise JWTError("Not an access token")
    return payload
