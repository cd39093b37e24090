"""
Store Evidence Schemas
======================

Typed views over the raw JSON returned by the app stores.

Each payload shape is wrapped in its own model tagged with a ``kind``
literal, so the resolver can tell an iOS subscription receipt from an
Android one-time product without inspecting which keys happen to be set.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from entitlement_engine.models.entitlement import ProductTier


# =============================================================================
# Product catalog
# =============================================================================

LIFETIME_PRODUCT_IDS = frozenset({
    "com.braveheartinnovations.debateai.premium.lifetime",
    "com.braveheartinnovations.debateai.premium.lifetime.v2",
    "premium_lifetime",
})


def is_lifetime_product(product_id: Optional[str]) -> bool:
    """Return True for one-time (non-expiring) SKUs."""
    return product_id in LIFETIME_PRODUCT_IDS


def resolve_product_tier(product_id: str) -> ProductTier:
    """Map a store SKU onto the normalized product identifier."""
    if is_lifetime_product(product_id):
        return ProductTier.LIFETIME
    if "annual" in product_id:
        return ProductTier.ANNUAL
    return ProductTier.MONTHLY


def parse_epoch_millis(value: Any) -> Optional[datetime]:
    """
    Parse a millisecond epoch (base-10 string or integer) into a UTC datetime.

    Returns None for missing or unparseable values.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


# =============================================================================
# Evidence variants
# =============================================================================

EpochMillis = Optional[Union[int, str]]


class _StoreModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class IosTransaction(_StoreModel):
    """One entry of ``latest_receipt_info`` or ``receipt.in_app``."""

    product_id: Optional[str] = None
    purchase_date_ms: EpochMillis = None
    expires_date_ms: EpochMillis = None
    is_trial_period: Optional[str] = None
    is_in_intro_offer_period: Optional[str] = None


class IosPendingRenewal(_StoreModel):
    """One entry of ``pending_renewal_info``."""

    product_id: Optional[str] = None
    auto_renew_product_id: Optional[str] = None
    auto_renew_status: Optional[str] = None


class IosSubscriptionEvidence(_StoreModel):
    """Verified receipt for an auto-renewing iOS subscription."""

    kind: Literal["ios_subscription"] = "ios_subscription"
    latest_receipt_info: list[IosTransaction] = Field(default_factory=list)
    pending_renewal_info: list[IosPendingRenewal] = Field(default_factory=list)


class IosLifetimeEvidence(_StoreModel):
    """Verified receipt for an iOS one-time purchase (``receipt.in_app``)."""

    kind: Literal["ios_lifetime"] = "ios_lifetime"
    in_app: list[IosTransaction] = Field(default_factory=list)

    @classmethod
    def from_verify_response(cls, payload: dict) -> "IosLifetimeEvidence":
        receipt = payload.get("receipt") or {}
        return cls(in_app=receipt.get("in_app") or [])


class AndroidSubscriptionEvidence(_StoreModel):
    """Google Play ``purchases.subscriptions.get`` response."""

    kind: Literal["android_subscription"] = "android_subscription"
    expiry_time_millis: EpochMillis = Field(default=None, alias="expiryTimeMillis")
    start_time_millis: EpochMillis = Field(default=None, alias="startTimeMillis")
    auto_renewing: Optional[bool] = Field(default=None, alias="autoRenewing")
    # 0 pending, 1 received, 2 free trial, 3 deferred
    payment_state: Optional[int] = Field(default=None, alias="paymentState")
    linked_purchase_token: Optional[str] = Field(default=None, alias="linkedPurchaseToken")


class AndroidProductEvidence(_StoreModel):
    """Google Play ``purchases.products.get`` response."""

    kind: Literal["android_product"] = "android_product"
    # 0 purchased, 1 canceled, 2 pending
    purchase_state: Optional[int] = Field(default=None, alias="purchaseState")
    purchase_time_millis: EpochMillis = Field(default=None, alias="purchaseTimeMillis")


StoreEvidence = Annotated[
    Union[
        IosSubscriptionEvidence,
        IosLifetimeEvidence,
        AndroidSubscriptionEvidence,
        AndroidProductEvidence,
    ],
    Field(discriminator="kind"),
]


# =============================================================================
# Normalized facts
# =============================================================================

@dataclass(frozen=True)
class NormalizedPurchaseFacts:
    """Store-independent outcome of resolving one piece of evidence."""

    expires_at: Optional[datetime]
    in_trial: bool
    trial_start: Optional[datetime]
    trial_end: Optional[datetime]
    auto_renewing: bool
    is_lifetime: bool
    resolved_product_id: ProductTier

    def is_active(self, now: datetime) -> bool:
        if self.is_lifetime:
            return True
        return self.expires_at is not None and self.expires_at > now
