"""
Notification Ingestion Service
==============================

Applies asynchronous store notifications to entitlement records.

Google Play:
    Real-Time Developer Notifications arrive through a Pub/Sub push
    subscription. The purchase is re-verified with the Publisher API before
    anything is written. Every failure is logged and swallowed: the relay
    must see the message as delivered.

App Store:
    Server Notifications V2 arrive as a signed JWS whose payload carries a
    second signed JWS with the transaction. Both are verified against the
    App Store key set. Only a notification with a usable ``expiresDate``
    changes the stored record.

Records flagged lifetime are never changed by notifications.
"""

import base64
import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.core.errors import (
    SignatureVerificationError,
    UpstreamVerificationError,
)
from entitlement_engine.core.security import mask_token
from entitlement_engine.models.entitlement import (
    EventSource,
    MembershipStatus,
    Platform,
    UserEntitlement,
)
from entitlement_engine.schemas.notifications import (
    AppStoreNotificationPayload,
    AppStoreTransactionInfo,
    DeveloperNotification,
    PubSubPushEnvelope,
)
from entitlement_engine.schemas.store import (
    AndroidSubscriptionEvidence,
    parse_epoch_millis,
    resolve_product_tier,
)
from entitlement_engine.services.entitlement_resolver import derive_membership_status, resolve
from entitlement_engine.services.entitlement_store import EntitlementStore
from entitlement_engine.services.signature import JWKSSignatureVerifier, SignatureVerifier
from entitlement_engine.services.store_verifier import StoreVerifier
from entitlement_engine.utils.helpers import utc_now

logger = logging.getLogger(__name__)


def decode_push_message(envelope: PubSubPushEnvelope) -> DeveloperNotification:
    """
    Decode the base64 JSON carried in a Pub/Sub push message.

    Raises:
        ValueError: Missing, non-base64 or non-JSON data
    """
    if envelope.message is None or not envelope.message.data:
        raise ValueError("Push message has no data")

    raw = base64.b64decode(envelope.message.data, validate=True)
    return DeveloperNotification.model_validate(json.loads(raw.decode("utf-8")))


class NotificationIngestService:
    """Service for store-initiated entitlement updates."""

    def __init__(
        self,
        db: AsyncSession,
        verifier: Optional[StoreVerifier] = None,
        store: Optional[EntitlementStore] = None,
        signature_verifier: Optional[SignatureVerifier] = None,
    ):
        self.db = db
        self.verifier = verifier or StoreVerifier()
        self.store = store or EntitlementStore(db)
        self.signature_verifier = signature_verifier or JWKSSignatureVerifier()

    # -------------------------------------------------------------------------
    # Google Play
    # -------------------------------------------------------------------------

    async def handle_play_notification(
        self,
        envelope: PubSubPushEnvelope,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Process one Play notification. Never raises.

        Args:
            envelope: Pub/Sub push body
            now: Clock override (defaults to current UTC time)
        """
        message_id = envelope.message.message_id if envelope.message else None

        try:
            await self._process_play_notification(envelope, now or utc_now())
        except Exception:
            # TODO: surface repeated failures (dead-letter topic) instead of only logging
            logger.exception("Play notification processing failed: message_id=%s", message_id)
            await self.db.rollback()

    async def _match_linked_token(self, purchase_token: str) -> Optional[UserEntitlement]:
        """Find the owner of an upgraded/resubscribed purchase via its linked token."""
        try:
            data = await self.verifier.get_android_subscription_v2(purchase_token)
        except UpstreamVerificationError as e:
            logger.warning(
                "Linked token lookup failed for token=%s: %s",
                mask_token(purchase_token),
                e,
            )
            return None

        linked_token = data.get("linkedPurchaseToken")
        if not linked_token:
            return None

        entitlement = await self.store.find_user_by_android_token(linked_token)
        if entitlement is not None:
            logger.info(
                "Purchase token rotated: user=%s old=%s new=%s",
                entitlement.user_id,
                mask_token(linked_token),
                mask_token(purchase_token),
            )
        return entitlement

    async def _process_play_notification(
        self,
        envelope: PubSubPushEnvelope,
        now: datetime,
    ) -> None:
        try:
            notification = decode_push_message(envelope)
        except ValueError as e:
            logger.warning("Malformed Play notification payload: %s", e)
            return

        sub = notification.subscription_notification
        if sub is None or not sub.purchase_token or not sub.subscription_id:
            logger.info("Play notification without subscription data, ignoring")
            return

        entitlement = await self.store.find_user_by_android_token(sub.purchase_token)
        if entitlement is None:
            entitlement = await self._match_linked_token(sub.purchase_token)
        if entitlement is None:
            logger.warning(
                "No user found for Play purchase token=%s",
                mask_token(sub.purchase_token),
            )
            return

        if entitlement.is_lifetime:
            logger.info("Ignoring Play notification for lifetime user=%s", entitlement.user_id)
            return

        data = await self.verifier.get_android_subscription(
            sub.subscription_id, sub.purchase_token
        )
        evidence = AndroidSubscriptionEvidence.model_validate(data)
        facts = resolve(Platform.ANDROID, sub.subscription_id, evidence, now)

        previous_status = MembershipStatus(entitlement.membership_status)
        # A notification may keep an existing trial but never starts one
        status = derive_membership_status(
            facts, now, grant_trial=previous_status == MembershipStatus.TRIAL
        )

        await self.store.merge(
            entitlement.user_id,
            {
                "membership_status": status,
                "is_premium": status != MembershipStatus.DEMO,
                "subscription_expiry": facts.expires_at,
                "auto_renewing": facts.auto_renewing,
                "product_id": facts.resolved_product_id,
                "platform": Platform.ANDROID,
                "android_purchase_token": sub.purchase_token,
            },
        )
        await self.store.record_event(
            user_id=entitlement.user_id,
            source=EventSource.PLAY_STORE_NOTIFICATION,
            notification_type=str(sub.notification_type),
            previous_status=previous_status.value,
            new_status=status.value,
            product_id=facts.resolved_product_id.value,
            subscription_expiry=facts.expires_at,
        )
        await self.db.commit()

        logger.info(
            "Play notification applied: user=%s type=%s status=%s",
            entitlement.user_id,
            sub.notification_type,
            status.value,
        )

    # -------------------------------------------------------------------------
    # App Store
    # -------------------------------------------------------------------------

    async def handle_app_store_notification(
        self,
        signed_payload: str,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Process one App Store Server Notification.

        Signature failures, missing pieces, unknown users and processing
        errors are logged and swallowed.
        """
        now = now or utc_now()

        try:
            claims = await self.signature_verifier.verify(signed_payload)
        except SignatureVerificationError as e:
            logger.warning("App Store notification signature invalid: %s", e)
            return

        try:
            await self._process_app_store_claims(claims, now)
        except SignatureVerificationError as e:
            logger.warning("App Store transaction signature invalid: %s", e)
        except Exception:
            logger.exception("App Store notification processing failed")
            await self.db.rollback()

    async def _process_app_store_claims(self, claims: dict, now: datetime) -> None:
        payload = AppStoreNotificationPayload.model_validate(claims)

        signed_transaction = payload.data.signed_transaction_info if payload.data else None
        if not signed_transaction:
            logger.info(
                "App Store notification without transaction info: type=%s",
                payload.notification_type,
            )
            return

        transaction = AppStoreTransactionInfo.model_validate(
            await self.signature_verifier.verify(signed_transaction)
        )
        if not transaction.app_account_token:
            logger.info(
                "App Store transaction without appAccountToken: type=%s",
                payload.notification_type,
            )
            return

        entitlement = await self.store.find_user_by_app_account_token(
            transaction.app_account_token
        )
        if entitlement is None:
            logger.warning(
                "No user found for appAccountToken=%s",
                mask_token(transaction.app_account_token),
            )
            return

        if entitlement.is_lifetime:
            logger.info("Ignoring App Store notification for lifetime user=%s", entitlement.user_id)
            return

        expires_at = parse_epoch_millis(transaction.expires_date)
        if expires_at is None:
            logger.info(
                "App Store notification without expiry, nothing to apply: user=%s type=%s",
                entitlement.user_id,
                payload.notification_type,
            )
            return

        status = MembershipStatus.PREMIUM if expires_at > now else MembershipStatus.DEMO
        fields = {
            "membership_status": status,
            "is_premium": status != MembershipStatus.DEMO,
            "subscription_expiry": expires_at,
            "platform": Platform.IOS,
        }
        product_tier = None
        if transaction.product_id:
            product_tier = resolve_product_tier(transaction.product_id)
            fields["product_id"] = product_tier

        notification_type = payload.notification_type
        if notification_type and payload.subtype:
            notification_type = f"{notification_type}:{payload.subtype}"

        await self.store.merge(entitlement.user_id, fields)
        await self.store.record_event(
            user_id=entitlement.user_id,
            source=EventSource.APP_STORE_NOTIFICATION,
            notification_type=notification_type,
            previous_status=MembershipStatus(entitlement.membership_status).value,
            new_status=status.value,
            product_id=product_tier.value if product_tier else None,
            subscription_expiry=expires_at,
        )
        await self.db.commit()

        logger.info(
            "App Store notification applied: user=%s type=%s status=%s",
            entitlement.user_id,
            notification_type,
            status.value,
        )
