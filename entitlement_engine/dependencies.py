"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
from typing import Annotated, Optional
import uuid

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.core.security import decode_token
from entitlement_engine.db.session import get_db
from entitlement_engine.models.user import User

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)


async def _resolve_user_from_token(
    credentials: HTTPAuthorizationCredentials,
    db: AsyncSession,
) -> Optional[User]:
    """Decode the JWT and load the matching User row."""
    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("type") != "access":
        return None

    user_id_str = payload.get("sub")
    if user_id_str is None:
        return None

    try:
        user_id = uuid.UUID(user_id_str)
    except ValueError:
        return None

    result = await db.execute(select(User).where(User.user_id == user_id))
    return result.scalar_one_or_none()


async def get_current_user_optional(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: DBSession,
) -> Optional[User]:
    """
    Get current user if authenticated, None otherwise.

    Services that require a caller raise ``unauthenticated`` themselves.
    """
    if credentials is None:
        return None

    user = await _resolve_user_from_token(credentials, db)
    if user is not None:
        # Picked up by the New Relic middleware
        request.state.user_id = str(user.user_id)
    return user


# Type alias for the (possibly anonymous) caller
CurrentUserOptional = Annotated[Optional[User], Depends(get_current_user_optional)]
