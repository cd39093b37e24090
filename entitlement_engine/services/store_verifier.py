"""
Store Verifier
==============

Server-to-server verification of purchase evidence.

- Apple: legacy ``verifyReceipt`` endpoint, production first with a single
  sandbox fallback on status 21007.
- Google Play: Android Publisher API v3 (subscriptions, one-time products
  and subscriptionsv2), authenticated with service-account credentials.

Every call opens its own ``httpx.AsyncClient``. Nothing here writes to the
stores.
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import quote

import google.auth
import httpx
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import requests as google_requests

from entitlement_engine.config import settings
from entitlement_engine.core.errors import ConfigurationError, UpstreamVerificationError
from entitlement_engine.core.security import mask_token
from entitlement_engine.models.entitlement import Platform
from entitlement_engine.schemas.store import (
    AndroidProductEvidence,
    AndroidSubscriptionEvidence,
    IosLifetimeEvidence,
    IosSubscriptionEvidence,
    StoreEvidence,
    is_lifetime_product,
)

logger = logging.getLogger(__name__)


class StoreVerifier:
    """Thin async client over the Apple and Google Play verification APIs."""

    APPLE_STATUS_OK = 0
    APPLE_STATUS_SANDBOX_RECEIPT = 21007

    ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
    ANDROID_PUBLISHER_BASE_URL = (
        "https://androidpublisher.googleapis.com/androidpublisher/v3/applications"
    )

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.shared_secret = settings.APPLE_SHARED_SECRET
        self.production_url = settings.APPLE_VERIFY_PRODUCTION_URL
        self.sandbox_url = settings.APPLE_VERIFY_SANDBOX_URL
        self.package_name = settings.ANDROID_PACKAGE_NAME
        self.credentials_file = settings.GOOGLE_APPLICATION_CREDENTIALS
        self.timeout = settings.STORE_HTTP_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self.timeout)

    # -------------------------------------------------------------------------
    # Apple
    # -------------------------------------------------------------------------

    async def _post_receipt(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: dict,
    ) -> dict:
        try:
            response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.error("Apple verifyReceipt transport error url=%s: %s", url, e)
            raise UpstreamVerificationError("Apple receipt service unreachable") from e

        if response.status_code != 200:
            logger.error(
                "Apple verifyReceipt returned HTTP %d url=%s",
                response.status_code,
                url,
            )
            raise UpstreamVerificationError(
                "Apple receipt service error", status=response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamVerificationError("Apple receipt service returned invalid JSON") from e

    async def verify_apple_receipt(self, receipt: str) -> dict:
        """
        Verify a base64 receipt with Apple.

        Sends the receipt to production; a 21007 status means it is a
        sandbox receipt, in which case it is re-sent to the sandbox exactly
        once. Any other non-zero status is a failure.

        Returns:
            The decoded verifyReceipt response body.
        """
        if not self.shared_secret:
            raise ConfigurationError("Apple shared secret not configured")

        payload = {
            "receipt-data": receipt,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }

        async with self._client() as client:
            data = await self._post_receipt(client, self.production_url, payload)

            if data.get("status") == self.APPLE_STATUS_SANDBOX_RECEIPT:
                logger.info("Sandbox receipt sent to production, retrying against sandbox")
                data = await self._post_receipt(client, self.sandbox_url, payload)

        status = data.get("status")
        if status != self.APPLE_STATUS_OK:
            logger.warning("Apple receipt rejected with status %s", status)
            raise UpstreamVerificationError(
                f"Apple receipt validation failed with status {status}",
                status=status,
            )

        return data

    # -------------------------------------------------------------------------
    # Google Play
    # -------------------------------------------------------------------------

    def _refresh_google_token(self) -> str:
        """Load service-account credentials and mint an access token (blocking)."""
        scopes = [self.ANDROID_PUBLISHER_SCOPE]
        try:
            if self.credentials_file:
                credentials, _ = google.auth.load_credentials_from_file(
                    self.credentials_file, scopes=scopes
                )
            else:
                credentials, _ = google.auth.default(scopes=scopes)
        except google_auth_exceptions.DefaultCredentialsError as e:
            raise ConfigurationError("Google Play credentials not configured") from e

        try:
            credentials.refresh(google_requests.Request())
        except google_auth_exceptions.GoogleAuthError as e:
            raise UpstreamVerificationError("Google credential refresh failed") from e

        return credentials.token

    async def _google_access_token(self) -> str:
        return await asyncio.to_thread(self._refresh_google_token)

    async def _android_get(self, path: str) -> dict:
        token = await self._google_access_token()
        url = f"{self.ANDROID_PUBLISHER_BASE_URL}/{quote(self.package_name, safe='')}/{path}"

        async with self._client() as client:
            try:
                response = await client.get(
                    url,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as e:
                logger.error("Google Play API transport error: %s", e)
                raise UpstreamVerificationError("Google Play API unreachable") from e

        if response.status_code != 200:
            logger.error(
                "Google Play API returned status %d: %s",
                response.status_code,
                response.text[:200],
            )
            raise UpstreamVerificationError(
                "Google Play API error", status=response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamVerificationError("Google Play API returned invalid JSON") from e

    async def get_android_subscription(self, subscription_id: str, token: str) -> dict:
        """``purchases.subscriptions.get`` for one subscription purchase."""
        logger.debug(
            "Fetching Android subscription sku=%s token=%s",
            subscription_id,
            mask_token(token),
        )
        return await self._android_get(
            f"purchases/subscriptions/{quote(subscription_id, safe='')}"
            f"/tokens/{quote(token, safe='')}"
        )

    async def get_android_product(self, product_id: str, token: str) -> dict:
        """``purchases.products.get`` for one in-app product purchase."""
        logger.debug(
            "Fetching Android product sku=%s token=%s",
            product_id,
            mask_token(token),
        )
        return await self._android_get(
            f"purchases/products/{quote(product_id, safe='')}"
            f"/tokens/{quote(token, safe='')}"
        )

    async def get_android_subscription_v2(self, token: str) -> dict:
        """``purchases.subscriptionsv2.get``; only the token is needed."""
        return await self._android_get(
            f"purchases/subscriptionsv2/tokens/{quote(token, safe='')}"
        )

    # -------------------------------------------------------------------------
    # Evidence
    # -------------------------------------------------------------------------

    async def fetch_evidence(
        self,
        platform: Platform,
        product_id: str,
        credential: str,
    ) -> StoreEvidence:
        """
        Verify ``credential`` with the right store and wrap the result.

        Args:
            platform: Store that issued the purchase
            product_id: Store SKU the client claims to own
            credential: iOS receipt or Android purchase token

        Returns:
            One of the tagged evidence variants.
        """
        lifetime = is_lifetime_product(product_id)

        if platform == Platform.IOS:
            data = await self.verify_apple_receipt(credential)
            if lifetime:
                return IosLifetimeEvidence.from_verify_response(data)
            return IosSubscriptionEvidence(
                latest_receipt_info=data.get("latest_receipt_info") or [],
                pending_renewal_info=data.get("pending_renewal_info") or [],
            )

        if lifetime:
            data = await self.get_android_product(product_id, credential)
            return AndroidProductEvidence.model_validate(data)

        data = await self.get_android_subscription(product_id, credential)
        return AndroidSubscriptionEvidence.model_validate(data)
