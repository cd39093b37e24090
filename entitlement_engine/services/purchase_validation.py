"""
Purchase Validation Service
===========================

Client-initiated reconciliation: verify a receipt or purchase token with
the store, decide the membership status, enforce the one-trial-per-person
rule and persist the result.

A still-current trial or premium entitlement short-circuits the whole flow:
no store call, no trial-history write and no database write.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.core.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    UnexpectedInternalError,
    ValidationInputError,
)
from entitlement_engine.core.security import mask_token
from entitlement_engine.models.entitlement import (
    EventSource,
    MembershipStatus,
    Platform,
    ProductTier,
    UserEntitlement,
)
from entitlement_engine.models.user import User
from entitlement_engine.schemas.purchase import PurchaseRequest, ValidatePurchaseResult
from entitlement_engine.services.entitlement_resolver import derive_membership_status, resolve
from entitlement_engine.services.entitlement_store import EntitlementStore
from entitlement_engine.services.store_verifier import StoreVerifier
from entitlement_engine.services.trial_guard import TrialAbuseGuard
from entitlement_engine.utils.helpers import utc_now
from entitlement_engine.utils.validators import validate_optional_uuid

logger = logging.getLogger(__name__)

# Errors that reach the client unchanged; everything else becomes "internal"
_CLIENT_ERRORS = (
    AuthenticationError,
    ValidationInputError,
    ConfigurationError,
    NotFoundError,
)


class PurchaseValidationService:
    """Service for client-submitted purchase validation."""

    def __init__(
        self,
        db: AsyncSession,
        verifier: Optional[StoreVerifier] = None,
        store: Optional[EntitlementStore] = None,
        guard: Optional[TrialAbuseGuard] = None,
    ):
        self.db = db
        self.verifier = verifier or StoreVerifier()
        self.store = store or EntitlementStore(db)
        self.guard = guard or TrialAbuseGuard(db)

    # -------------------------------------------------------------------------
    # Input checks
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_request(request: PurchaseRequest) -> tuple[Platform, str]:
        """Return the platform and store credential, or raise invalid-argument."""
        if not request.platform or not request.product_id:
            raise ValidationInputError("Missing required fields")

        try:
            platform = Platform(request.platform.lower())
        except ValueError:
            raise ValidationInputError("Unsupported platform", field="platform")

        if platform == Platform.IOS:
            if not request.receipt:
                raise ValidationInputError("Missing iOS receipt", field="receipt")
            return platform, request.receipt

        if not request.purchase_token:
            raise ValidationInputError("Missing Android purchase token", field="purchaseToken")
        return platform, request.purchase_token

    # -------------------------------------------------------------------------
    # Idempotency
    # -------------------------------------------------------------------------

    @staticmethod
    def _is_current(entitlement: Optional[UserEntitlement], now: datetime) -> bool:
        """True while a stored trial or premium entitlement has not lapsed."""
        if entitlement is None:
            return False
        if MembershipStatus(entitlement.membership_status) == MembershipStatus.DEMO:
            return False
        if entitlement.is_lifetime:
            return True
        expiry = entitlement.subscription_expiry
        return expiry is None or expiry >= now

    @staticmethod
    def _result_from_record(entitlement: UserEntitlement) -> ValidatePurchaseResult:
        product_id = entitlement.product_id
        return ValidatePurchaseResult(
            valid=True,
            membership_status=MembershipStatus(entitlement.membership_status).value,
            expiry_date=entitlement.subscription_expiry,
            trial_start_date=entitlement.trial_start,
            trial_end_date=entitlement.trial_end,
            auto_renewing=(
                entitlement.auto_renewing if entitlement.auto_renewing is not None else True
            ),
            product_id=ProductTier(product_id).value if product_id else ProductTier.MONTHLY.value,
            has_used_trial=bool(entitlement.has_used_trial),
            is_lifetime=bool(entitlement.is_lifetime),
        )

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    async def validate_purchase(
        self,
        caller: Optional[User],
        request: PurchaseRequest,
        now: Optional[datetime] = None,
    ) -> ValidatePurchaseResult:
        """
        Validate a purchase for the authenticated caller.

        Args:
            caller: Authenticated user, or None for anonymous requests
            request: Purchase evidence from the client
            now: Clock override (defaults to current UTC time)

        Returns:
            The reconciled entitlement.

        Raises:
            AuthenticationError, ValidationInputError, ConfigurationError,
            NotFoundError: passed through unchanged
            UnexpectedInternalError: for every other failure
        """
        if caller is None:
            raise AuthenticationError()

        now = now or utc_now()

        try:
            platform, credential = self._check_request(request)
            app_account_token = validate_optional_uuid(
                request.app_account_token, "appAccountToken"
            )
            return await self._validate(
                caller, platform, request.product_id, credential, app_account_token, now
            )
        except _CLIENT_ERRORS:
            raise
        except Exception:
            logger.exception(
                "Purchase validation failed: user=%s platform=%s product=%s",
                caller.user_id,
                request.platform,
                request.product_id,
            )
            raise UnexpectedInternalError("Validation failed")

    async def _validate(
        self,
        caller: User,
        platform: Platform,
        product_id: str,
        credential: str,
        app_account_token: Optional[str],
        now: datetime,
    ) -> ValidatePurchaseResult:
        existing = await self.store.get(caller.user_id)

        if self._is_current(existing, now):
            logger.info(
                "Entitlement still current, skipping store verification: user=%s",
                caller.user_id,
            )
            return self._result_from_record(existing)

        evidence = await self.verifier.fetch_evidence(platform, product_id, credential)
        facts = resolve(platform, product_id, evidence, now)

        trial_already_used = False
        if facts.in_trial:
            trial_already_used = await self.guard.has_used_trial(caller.user_id, caller.email)

        status = derive_membership_status(facts, now, grant_trial=not trial_already_used)
        starts_trial = status == MembershipStatus.TRIAL

        if starts_trial:
            await self.guard.record_trial_usage(caller.user_id, caller.email)
        elif facts.in_trial and trial_already_used:
            logger.warning(
                "Trial already used, granting premium instead: user=%s product=%s",
                caller.user_id,
                product_id,
            )

        fields = {
            "membership_status": status,
            "is_premium": status != MembershipStatus.DEMO,
            "is_lifetime": facts.is_lifetime,
            "subscription_expiry": facts.expires_at,
            "auto_renewing": facts.auto_renewing,
            "product_id": facts.resolved_product_id,
            "platform": platform,
        }
        if facts.in_trial:
            fields["trial_start"] = facts.trial_start
            fields["trial_end"] = facts.trial_end
            fields["has_used_trial"] = True
        if platform == Platform.ANDROID:
            fields["android_purchase_token"] = credential
        if app_account_token:
            fields["app_account_token"] = app_account_token

        previous_status = (
            MembershipStatus(existing.membership_status).value if existing else None
        )

        await self.store.merge(caller.user_id, fields)
        await self.store.record_event(
            user_id=caller.user_id,
            source=EventSource.VALIDATION,
            previous_status=previous_status,
            new_status=status.value,
            product_id=facts.resolved_product_id.value,
            subscription_expiry=facts.expires_at,
        )
        await self.db.commit()

        logger.info(
            "Purchase validated: user=%s platform=%s product=%s status=%s credential=%s",
            caller.user_id,
            platform.value,
            facts.resolved_product_id.value,
            status.value,
            mask_token(credential),
        )

        # Answer with the stored record so a retry sees the same entitlement
        return self._result_from_record(await self.store.get(caller.user_id))
