"""
Signed Payload Verification
===========================

Verifies compact JWS payloads (App Store Server Notifications and their
nested signed transactions) against a remote JSON Web Key Set.

The key set is fetched over HTTPS and cached in Redis. Verification is
behind a small interface so tests and alternative key sources can be
injected.
"""

import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx
from jose import JWTError, jwt

from entitlement_engine.config import settings
from entitlement_engine.core.errors import SignatureVerificationError
from entitlement_engine.services.cache import JsonCache

logger = logging.getLogger(__name__)

KeySetLoader = Callable[[], Awaitable[dict[str, Any]]]

key_set_cache = JsonCache("jwks")


async def fetch_remote_key_set(url: str, ttl: Optional[int] = None) -> dict[str, Any]:
    """
    Fetch a JWKS document, serving it from cache when possible.

    Raises:
        SignatureVerificationError: The key set could not be fetched or is empty
    """
    cached = await key_set_cache.get(url)
    if cached:
        return cached

    async with httpx.AsyncClient(timeout=settings.STORE_HTTP_TIMEOUT_SECONDS) as client:
        try:
            response = await client.get(url)
            response.raise_for_status()
            key_set = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Failed to fetch signing keys from %s: %s", url, e)
            raise SignatureVerificationError("Unable to fetch signing keys") from e

    if not isinstance(key_set, dict) or not key_set.get("keys"):
        raise SignatureVerificationError("Signing key set is empty")

    await key_set_cache.set(
        url,
        key_set,
        ttl=ttl if ttl is not None else settings.APPLE_JWKS_CACHE_TTL_SECONDS,
    )
    return key_set


class SignatureVerifier:
    """Interface: verify a compact JWS and return its claims."""

    async def verify(self, token: str) -> dict[str, Any]:
        raise NotImplementedError


class JWKSSignatureVerifier(SignatureVerifier):
    """Verifies JWS tokens against a JSON Web Key Set."""

    def __init__(
        self,
        key_set_loader: Optional[KeySetLoader] = None,
        algorithms: Sequence[str] = ("ES256",),
    ):
        self._key_set_loader = key_set_loader or self._load_apple_key_set
        self.algorithms = list(algorithms)

    @staticmethod
    async def _load_apple_key_set() -> dict[str, Any]:
        return await fetch_remote_key_set(settings.APPLE_NOTIFICATION_JWKS_URL)

    async def verify(self, token: str) -> dict[str, Any]:
        """
        Verify ``token`` and return its decoded claims.

        Raises:
            SignatureVerificationError: Malformed token, unknown key or bad signature
        """
        key_set = await self._key_set_loader()

        try:
            claims = jwt.decode(
                token,
                key_set,
                algorithms=self.algorithms,
                options={"verify_aud": False},
            )
        except JWTError as e:
            raise SignatureVerificationError(str(e)) from e

        if not isinstance(claims, dict):
            raise SignatureVerificationError("Signed payload is not a JSON object")
        return claims
