"""
Notification Schemas
====================

Payloads delivered by the store notification channels:

- Google Cloud Pub/Sub push envelopes carrying Play Real-Time Developer
  Notifications (base64 JSON in ``message.data``)
- App Store Server Notifications V2 (decoded JWS claims)
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _NotificationModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ─── Google Play ──────────────────────────────────────────────────────────────


class PubSubMessage(_NotificationModel):
    """Single Pub/Sub message; ``data`` is base64-encoded."""

    data: Optional[str] = None
    message_id: Optional[str] = Field(default=None, alias="messageId")
    attributes: Optional[dict[str, str]] = None


class PubSubPushEnvelope(_NotificationModel):
    """Body of a Pub/Sub push request."""

    message: Optional[PubSubMessage] = None
    subscription: Optional[str] = None


class SubscriptionNotification(_NotificationModel):
    version: Optional[str] = None
    notification_type: Optional[int] = Field(default=None, alias="notificationType")
    purchase_token: Optional[str] = Field(default=None, alias="purchaseToken")
    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")


class DeveloperNotification(_NotificationModel):
    """Decoded Real-Time Developer Notification."""

    version: Optional[str] = None
    package_name: Optional[str] = Field(default=None, alias="packageName")
    event_time_millis: Optional[Union[int, str]] = Field(default=None, alias="eventTimeMillis")
    subscription_notification: Optional[SubscriptionNotification] = Field(
        default=None, alias="subscriptionNotification"
    )


# ─── App Store ────────────────────────────────────────────────────────────────


class AppStoreNotificationData(_NotificationModel):
    signed_transaction_info: Optional[str] = Field(default=None, alias="signedTransactionInfo")
    signed_renewal_info: Optional[str] = Field(default=None, alias="signedRenewalInfo")
    bundle_id: Optional[str] = Field(default=None, alias="bundleId")
    environment: Optional[str] = None


class AppStoreNotificationPayload(_NotificationModel):
    """Claims of the outer ``signedPayload`` JWS."""

    notification_type: Optional[str] = Field(default=None, alias="notificationType")
    subtype: Optional[str] = None
    notification_uuid: Optional[str] = Field(default=None, alias="notificationUUID")
    data: Optional[AppStoreNotificationData] = None


class AppStoreTransactionInfo(_NotificationModel):
    """Claims of the nested ``signedTransactionInfo`` JWS."""

    app_account_token: Optional[str] = Field(default=None, alias="appAccountToken")
    product_id: Optional[str] = Field(default=None, alias="productId")
    expires_date: Optional[Union[int, str]] = Field(default=None, alias="expiresDate")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    original_transaction_id: Optional[str] = Field(default=None, alias="originalTransactionId")
