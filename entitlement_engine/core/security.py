"""
Security Module
===============

Authentication and hashing utilities including:
- JWT access token generation and validation
- Salted identity hashing for trial-history correlation
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional
import hashlib
import uuid

from jose import JWTError, jwt

from entitlement_engine.config import settings


def create_access_token(
    data: dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Payload data to encode
        expires_delta: Custom expiration time (optional)

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
        )

    to_encode.update({
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "type": "access",
    })

    return jwt.encode(
        to_encode,
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None otherwise
    """
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        return None


def create_token_for_user(user_id: uuid.UUID, email: Optional[str]) -> str:
    """Issue an access token for a user (used by tooling and tests)."""
    return create_access_token({"sub": str(user_id), "email": email})


def hash_identity(identity: str, salt: Optional[str] = None) -> str:
    """
    One-way hash of a stable identity (e-mail) for trial-history lookups.

    The identity is trimmed and lowercased before hashing so the same
    address always maps to the same digest.
    """
    if salt is None:
        salt = settings.TRIAL_IDENTITY_SALT
    normalized = identity.strip().lower()
    return hashlib.sha256(f"{salt}{normalized}".encode("utf-8")).hexdigest()


def mask_token(token: Optional[str]) -> str:
    """Shorten a purchase or account token for log lines."""
    if not token:
        return "<none>"
    return f"{token[:8]}..."
