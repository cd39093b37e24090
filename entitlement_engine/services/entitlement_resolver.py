"""
Entitlement Resolver
====================

Pure functions that turn verified store evidence into
``NormalizedPurchaseFacts`` and facts into a membership status.

Trial-abuse policy is not applied here: ``derive_membership_status`` takes
an explicit ``grant_trial`` flag so callers decide whether a store-reported
trial may be honoured.
"""

from datetime import datetime
from typing import Optional

from entitlement_engine.core.errors import NotFoundError, ValidationInputError
from entitlement_engine.models.entitlement import MembershipStatus, Platform, ProductTier
from entitlement_engine.schemas.store import (
    AndroidProductEvidence,
    AndroidSubscriptionEvidence,
    IosLifetimeEvidence,
    IosSubscriptionEvidence,
    IosTransaction,
    NormalizedPurchaseFacts,
    StoreEvidence,
    parse_epoch_millis,
    resolve_product_tier,
)
from entitlement_engine.utils.helpers import utc_now

# Google Play paymentState / purchaseState values
ANDROID_PAYMENT_STATE_FREE_TRIAL = 2
ANDROID_PURCHASE_STATE_PURCHASED = 0

_EVIDENCE_PLATFORM = {
    IosSubscriptionEvidence: Platform.IOS,
    IosLifetimeEvidence: Platform.IOS,
    AndroidSubscriptionEvidence: Platform.ANDROID,
    AndroidProductEvidence: Platform.ANDROID,
}


def _lifetime_facts() -> NormalizedPurchaseFacts:
    return NormalizedPurchaseFacts(
        expires_at=None,
        in_trial=False,
        trial_start=None,
        trial_end=None,
        auto_renewing=False,
        is_lifetime=True,
        resolved_product_id=ProductTier.LIFETIME,
    )


def _expiry_sort_key(transaction: IosTransaction) -> int:
    try:
        return int(transaction.expires_date_ms)
    except (TypeError, ValueError):
        return -1


def _resolve_ios_subscription(
    product_id: str,
    evidence: IosSubscriptionEvidence,
) -> NormalizedPurchaseFacts:
    matching = [t for t in evidence.latest_receipt_info if t.product_id == product_id]
    if not matching:
        raise NotFoundError("No matching subscription found in receipt")

    # Most recent renewal wins
    latest = max(matching, key=_expiry_sort_key)
    expires_at = parse_epoch_millis(latest.expires_date_ms)

    in_trial = (
        latest.is_trial_period == "true"
        or latest.is_in_intro_offer_period == "true"
    )

    pending = next(
        (p for p in evidence.pending_renewal_info if p.product_id == product_id),
        None,
    )
    auto_renewing = pending.auto_renew_status == "1" if pending is not None else True

    return NormalizedPurchaseFacts(
        expires_at=expires_at,
        in_trial=in_trial,
        trial_start=parse_epoch_millis(latest.purchase_date_ms) if in_trial else None,
        trial_end=expires_at if in_trial else None,
        auto_renewing=auto_renewing,
        is_lifetime=False,
        resolved_product_id=resolve_product_tier(product_id),
    )


def _resolve_android_subscription(
    product_id: str,
    evidence: AndroidSubscriptionEvidence,
    now: datetime,
) -> NormalizedPurchaseFacts:
    expires_at = parse_epoch_millis(evidence.expiry_time_millis)
    if expires_at is None:
        raise ValidationInputError("Invalid Android subscription state")

    in_trial = evidence.payment_state == ANDROID_PAYMENT_STATE_FREE_TRIAL

    return NormalizedPurchaseFacts(
        expires_at=expires_at,
        in_trial=in_trial,
        trial_start=(parse_epoch_millis(evidence.start_time_millis) or now) if in_trial else None,
        trial_end=expires_at if in_trial else None,
        auto_renewing=bool(evidence.auto_renewing),
        is_lifetime=False,
        resolved_product_id=resolve_product_tier(product_id),
    )


def resolve(
    platform: Platform,
    product_id: str,
    evidence: StoreEvidence,
    now: Optional[datetime] = None,
) -> NormalizedPurchaseFacts:
    """
    Normalize one piece of verified store evidence.

    Args:
        platform: Store the client said the purchase came from
        product_id: Store SKU the client claims to own
        evidence: Tagged store payload from ``StoreVerifier.fetch_evidence``
        now: Clock override (defaults to current UTC time)

    Raises:
        NotFoundError: The receipt holds no purchase for ``product_id``
        ValidationInputError: The store reports an unusable purchase state
    """
    now = now or utc_now()

    if _EVIDENCE_PLATFORM.get(type(evidence)) != platform:
        raise ValidationInputError("Store evidence does not match platform")

    if isinstance(evidence, IosLifetimeEvidence):
        if not any(t.product_id == product_id for t in evidence.in_app):
            raise NotFoundError("No matching lifetime purchase found in receipt")
        return _lifetime_facts()

    if isinstance(evidence, AndroidProductEvidence):
        if evidence.purchase_state != ANDROID_PURCHASE_STATE_PURCHASED:
            raise ValidationInputError("Invalid Android product purchase state")
        return _lifetime_facts()

    if isinstance(evidence, IosSubscriptionEvidence):
        return _resolve_ios_subscription(product_id, evidence)

    return _resolve_android_subscription(product_id, evidence, now)


def derive_membership_status(
    facts: NormalizedPurchaseFacts,
    now: datetime,
    grant_trial: bool,
) -> MembershipStatus:
    """
    Apply the membership state machine to resolved facts.

    - lifetime is always premium
    - active evidence is trial (when allowed) or premium
    - expired evidence stays premium only while the store still reports
      auto-renewal (grace for renewals that have not propagated yet)
    """
    if facts.is_lifetime:
        return MembershipStatus.PREMIUM

    if facts.is_active(now):
        if facts.in_trial and grant_trial:
            return MembershipStatus.TRIAL
        return MembershipStatus.PREMIUM

    if facts.auto_renewing:
        return MembershipStatus.PREMIUM
    return MembershipStatus.DEMO
