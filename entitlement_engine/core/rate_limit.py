"""
Rate Limiting
=============

Redis-based fixed-window rate limiting for API endpoints.

The first request of a window creates the counter with ``INCR`` and sets
its expiry; later requests only increment. When Redis is unavailable the
request is allowed.
"""

import logging
from typing import Optional

from fastapi import Request

from entitlement_engine.config import settings
from entitlement_engine.core.errors import RateLimitError
from entitlement_engine.core.security import decode_token
from entitlement_engine.services.cache import get_redis

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window limiter keyed by caller (user id or client IP)."""

    LIMITS = {
        "validate": {"max_requests": settings.VALIDATION_RATE_LIMIT, "window_seconds": 60},
        "default": {"max_requests": 100, "window_seconds": 60},
    }

    @staticmethod
    def _get_key(identifier: str, action: str) -> str:
        return f"ratelimit:{action}:{identifier}"

    @staticmethod
    async def check_rate_limit(
        identifier: str,
        action: str,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> dict:
        """
        Count one request against ``identifier``'s window for ``action``.

        Returns:
            Dict with 'allowed', 'remaining', 'reset_in' keys
        """
        limits = RateLimiter.LIMITS.get(action, RateLimiter.LIMITS["default"])
        max_req = max_requests or limits["max_requests"]
        window = window_seconds or limits["window_seconds"]
        key = RateLimiter._get_key(identifier, action)

        try:
            client = await get_redis()
            count = await client.incr(key)
            if count == 1:
                await client.expire(key, window)
                reset_in = window
            else:
                ttl = await client.ttl(key)
                reset_in = ttl if ttl > 0 else window
        except Exception as e:
            logger.warning("Rate limit check failed open for %s: %s", key, e)
            return {"allowed": True, "remaining": max_req, "reset_in": window}

        return {
            "allowed": count <= max_req,
            "remaining": max(max_req - count, 0),
            "reset_in": reset_in,
        }


def _request_identifier(request: Request) -> str:
    """User id from the bearer token when it decodes, client IP otherwise."""
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        payload = decode_token(auth_header[7:])
        if payload and payload.get("sub"):
            return f"user:{payload['sub']}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


def create_rate_limit_dependency(action: str = "default"):
    """
    Build a route dependency that enforces ``action``'s limit.

    Usage:
        @router.post("/validate", dependencies=[Depends(create_rate_limit_dependency("validate"))])
    """
    async def dependency(request: Request) -> None:
        result = await RateLimiter.check_rate_limit(_request_identifier(request), action)
        if not result["allowed"]:
            limit = RateLimiter.LIMITS.get(action, RateLimiter.LIMITS["default"])["max_requests"]
            raise RateLimitError(reset_in=result["reset_in"], limit=limit)

    return dependency
