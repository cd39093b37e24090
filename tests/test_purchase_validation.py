"""
Purchase Validation Tests
=========================

Tests for the validation flow using in-memory store/guard fakes and a
mocked store verifier:

- Input and authentication errors
- Idempotency short-circuit
- First trial, repeated trial after account re-creation, lifetime purchase
- Error categorization
"""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient

from entitlement_engine.core.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    UnexpectedInternalError,
    UpstreamVerificationError,
    ValidationInputError,
)
from entitlement_engine.core.security import create_token_for_user
from entitlement_engine.models.entitlement import EventSource, MembershipStatus, Platform, ProductTier
from entitlement_engine.models.user import User
from entitlement_engine.schemas.purchase import PurchaseRequest
from entitlement_engine.schemas.store import (
    AndroidSubscriptionEvidence,
    IosLifetimeEvidence,
    IosSubscriptionEvidence,
)
from entitlement_engine.services.purchase_validation import PurchaseValidationService
from tests.conftest import NOW, millis

MONTHLY_SKU = "com.braveheartinnovations.debateai.premium.monthly"
LIFETIME_SKU = "com.braveheartinnovations.debateai.premium.lifetime"


def _android_request(**overrides) -> PurchaseRequest:
    body = {"platform": "android", "productId": MONTHLY_SKU, "purchaseToken": "play-token-123456"}
    body.update(overrides)
    return PurchaseRequest.model_validate(body)


def _ios_request(**overrides) -> PurchaseRequest:
    body = {"platform": "ios", "productId": MONTHLY_SKU, "receipt": "base64-receipt"}
    body.update(overrides)
    return PurchaseRequest.model_validate(body)


def _android_trial_evidence() -> AndroidSubscriptionEvidence:
    return AndroidSubscriptionEvidence.model_validate({
        "expiryTimeMillis": millis(NOW + timedelta(days=7)),
        "startTimeMillis": millis(NOW - timedelta(minutes=5)),
        "autoRenewing": True,
        "paymentState": 2,
    })


def _verifier(evidence=None, error=None) -> MagicMock:
    verifier = MagicMock()
    verifier.fetch_evidence = AsyncMock(return_value=evidence, side_effect=error)
    return verifier


def _service(mock_db, store, guard, verifier) -> PurchaseValidationService:
    return PurchaseValidationService(mock_db, verifier=verifier, store=store, guard=guard)


class TestRequestChecks:
    """Tests for authentication and input validation."""

    @pytest.mark.asyncio
    async def test_anonymous_caller(self, mock_db, store, guard):
        verifier = _verifier()
        service = _service(mock_db, store, guard, verifier)

        with pytest.raises(AuthenticationError) as exc:
            await service.validate_purchase(None, _android_request(), now=NOW)

        assert exc.value.message == "User must be authenticated"
        verifier.fetch_evidence.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "request_body, message",
        [
            ({"productId": MONTHLY_SKU, "receipt": "r"}, "Missing required fields"),
            ({"platform": "ios", "receipt": "r"}, "Missing required fields"),
            ({"platform": "ios", "productId": MONTHLY_SKU}, "Missing iOS receipt"),
            ({"platform": "android", "productId": MONTHLY_SKU}, "Missing Android purchase token"),
            ({"platform": "web", "productId": MONTHLY_SKU, "receipt": "r"}, "Unsupported platform"),
        ],
    )
    async def test_invalid_input(self, mock_db, store, guard, caller, request_body, message):
        service = _service(mock_db, store, guard, _verifier())

        with pytest.raises(ValidationInputError) as exc:
            await service.validate_purchase(
                caller, PurchaseRequest.model_validate(request_body), now=NOW
            )

        assert exc.value.message == message
        assert exc.value.status_code == 400
        assert exc.value.code == "invalid-argument"

    @pytest.mark.asyncio
    async def test_invalid_app_account_token(self, mock_db, store, guard, caller):
        service = _service(mock_db, store, guard, _verifier())

        with pytest.raises(ValidationInputError) as exc:
            await service.validate_purchase(
                caller, _ios_request(appAccountToken="not-a-uuid"), now=NOW
            )

        assert exc.value.field == "appAccountToken"


class TestIdempotency:
    """A current entitlement is returned as stored with no side effects."""

    @pytest.mark.asyncio
    async def test_current_premium_short_circuits(self, mock_db, store, guard, caller):
        expiry = NOW + timedelta(days=10)
        store.seed(
            caller.user_id,
            membership_status=MembershipStatus.PREMIUM,
            is_premium=True,
            subscription_expiry=expiry,
            auto_renewing=True,
            product_id=ProductTier.ANNUAL,
        )
        verifier = _verifier()
        service = _service(mock_db, store, guard, verifier)

        first = await service.validate_purchase(caller, _android_request(), now=NOW)
        second = await service.validate_purchase(caller, _android_request(), now=NOW)

        assert first == second
        assert first.membership_status == "premium"
        assert first.expiry_date == expiry
        assert first.product_id == "annual"
        verifier.fetch_evidence.assert_not_awaited()
        assert store.merge_calls == []
        assert store.events == []
        assert guard.records == {}
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_current_trial_short_circuits(self, mock_db, store, guard, caller):
        store.seed(
            caller.user_id,
            membership_status=MembershipStatus.TRIAL,
            is_premium=True,
            subscription_expiry=NOW + timedelta(days=2),
            has_used_trial=True,
        )
        verifier = _verifier()

        result = await _service(mock_db, store, guard, verifier).validate_purchase(
            caller, _android_request(), now=NOW
        )

        assert result.membership_status == "trial"
        assert result.has_used_trial is True
        # Stored record without a product id reports the default
        assert result.product_id == "monthly"
        verifier.fetch_evidence.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lifetime_short_circuits(self, mock_db, store, guard, caller):
        store.seed(
            caller.user_id,
            membership_status=MembershipStatus.PREMIUM,
            is_premium=True,
            is_lifetime=True,
            product_id=ProductTier.LIFETIME,
        )
        verifier = _verifier()

        result = await _service(mock_db, store, guard, verifier).validate_purchase(
            caller, _ios_request(productId=LIFETIME_SKU), now=NOW
        )

        assert result.is_lifetime is True
        assert result.expiry_date is None
        verifier.fetch_evidence.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_premium_is_reverified(self, mock_db, store, guard, caller):
        store.seed(
            caller.user_id,
            membership_status=MembershipStatus.PREMIUM,
            is_premium=True,
            subscription_expiry=NOW - timedelta(days=1),
        )
        evidence = AndroidSubscriptionEvidence.model_validate({
            "expiryTimeMillis": millis(NOW + timedelta(days=29)),
            "autoRenewing": True,
            "paymentState": 1,
        })
        verifier = _verifier(evidence)

        result = await _service(mock_db, store, guard, verifier).validate_purchase(
            caller, _android_request(), now=NOW
        )

        verifier.fetch_evidence.assert_awaited_once()
        assert result.membership_status == "premium"
        assert result.expiry_date == NOW + timedelta(days=29)

    @pytest.mark.asyncio
    async def test_demo_record_is_reverified(self, mock_db, store, guard, caller):
        store.seed(caller.user_id, membership_status=MembershipStatus.DEMO)
        verifier = _verifier(_android_trial_evidence())

        await _service(mock_db, store, guard, verifier).validate_purchase(
            caller, _android_request(), now=NOW
        )

        verifier.fetch_evidence.assert_awaited_once()


class TestScenarios:
    """End-to-end validation outcomes."""

    @pytest.mark.asyncio
    async def test_first_trial_is_granted_and_recorded(self, mock_db, store, guard, caller):
        verifier = _verifier(_android_trial_evidence())

        result = await _service(mock_db, store, guard, verifier).validate_purchase(
            caller, _android_request(), now=NOW
        )

        assert result.membership_status == "trial"
        assert result.has_used_trial is True
        assert result.trial_start_date == NOW - timedelta(minutes=5)
        assert result.trial_end_date == NOW + timedelta(days=7)
        assert result.auto_renewing is True
        assert caller.user_id in guard.records

        record = store.records[caller.user_id]
        assert record.membership_status == MembershipStatus.TRIAL
        assert record.is_premium is True
        assert record.has_used_trial is True
        assert record.android_purchase_token == "play-token-123456"
        assert record.platform == Platform.ANDROID

        assert len(store.events) == 1
        assert store.events[0].source == EventSource.VALIDATION
        assert store.events[0].new_status == "trial"
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_recreated_account_gets_premium_not_second_trial(self, mock_db, store, guard, caller):
        # First account consumed the trial, then was deleted
        await guard.record_trial_usage(uuid.uuid4(), caller.email)
        verifier = _verifier(_android_trial_evidence())

        result = await _service(mock_db, store, guard, verifier).validate_purchase(
            caller, _android_request(), now=NOW
        )

        assert result.membership_status == "premium"
        assert result.has_used_trial is True
        assert caller.user_id not in guard.records

        user_id, fields = store.merge_calls[-1]
        assert user_id == caller.user_id
        assert fields["membership_status"] == MembershipStatus.PREMIUM
        assert fields["has_used_trial"] is True
        assert store.records[caller.user_id].has_used_trial is True
        # Trial window stays visible to the client
        assert fields["trial_end"] == NOW + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_retry_after_trial_override_returns_same_entitlement(self, mock_db, store, guard, caller):
        await guard.record_trial_usage(uuid.uuid4(), caller.email)
        service = _service(mock_db, store, guard, _verifier(_android_trial_evidence()))

        first = await service.validate_purchase(caller, _android_request(), now=NOW)
        retry = await service.validate_purchase(caller, _android_request(), now=NOW)

        assert first == retry
        assert retry.has_used_trial is True
        service.verifier.fetch_evidence.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retry_after_trial_converts_to_paid_returns_same_entitlement(self, mock_db, store, guard, caller):
        later = NOW + timedelta(days=8)
        paid = AndroidSubscriptionEvidence.model_validate({
            "expiryTimeMillis": millis(NOW + timedelta(days=37)),
            "startTimeMillis": millis(NOW - timedelta(minutes=5)),
            "autoRenewing": True,
            "paymentState": 1,
        })
        await _service(mock_db, store, guard, _verifier(_android_trial_evidence())).validate_purchase(
            caller, _android_request(), now=NOW
        )
        service = _service(mock_db, store, guard, _verifier(paid))

        first = await service.validate_purchase(caller, _android_request(), now=later)
        retry = await service.validate_purchase(caller, _android_request(), now=later)

        assert first == retry
        assert first.membership_status == "premium"
        assert first.expiry_date == NOW + timedelta(days=37)
        assert first.has_used_trial is True
        # Trial window from the earlier validation is kept
        assert first.trial_end_date == NOW + timedelta(days=7)
        service.verifier.fetch_evidence.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_same_user_trial_only_once(self, mock_db, store, guard, caller):
        verifier = _verifier(_android_trial_evidence())
        service = _service(mock_db, store, guard, verifier)

        first = await service.validate_purchase(caller, _android_request(), now=NOW)
        # Record lapses to demo, then the same trial evidence is replayed
        store.records[caller.user_id].membership_status = MembershipStatus.DEMO
        second = await service.validate_purchase(caller, _android_request(), now=NOW)

        assert first.membership_status == "trial"
        assert second.membership_status == "premium"
        assert len(guard.records) == 1

    @pytest.mark.asyncio
    async def test_lifetime_purchase(self, mock_db, store, guard, caller):
        evidence = IosLifetimeEvidence(in_app=[{"product_id": LIFETIME_SKU}])
        verifier = _verifier(evidence)
        app_account_token = "5A1B2C3D-0000-4000-8000-00000000ABCD"

        result = await _service(mock_db, store, guard, verifier).validate_purchase(
            caller,
            _ios_request(productId=LIFETIME_SKU, appAccountToken=app_account_token),
            now=NOW,
        )

        assert result.membership_status == "premium"
        assert result.is_lifetime is True
        assert result.expiry_date is None
        assert result.auto_renewing is False
        assert result.product_id == "lifetime"
        assert result.has_used_trial is False

        record = store.records[caller.user_id]
        assert record.is_lifetime is True
        assert record.subscription_expiry is None
        assert record.app_account_token == app_account_token.lower()
        assert record.android_purchase_token is None

    @pytest.mark.asyncio
    async def test_expired_non_renewing_is_demo(self, mock_db, store, guard, caller):
        evidence = IosSubscriptionEvidence(
            latest_receipt_info=[{
                "product_id": MONTHLY_SKU,
                "expires_date_ms": millis(NOW - timedelta(days=3)),
            }],
            pending_renewal_info=[{"product_id": MONTHLY_SKU, "auto_renew_status": "0"}],
        )

        result = await _service(mock_db, store, guard, _verifier(evidence)).validate_purchase(
            caller, _ios_request(), now=NOW
        )

        assert result.membership_status == "demo"
        assert store.records[caller.user_id].is_premium is False

    @pytest.mark.asyncio
    async def test_identity_hash_used_when_caller_has_email(self, mock_db, store, guard):
        no_email = User(user_id=uuid.uuid4(), email=None)
        verifier = _verifier(_android_trial_evidence())

        result = await _service(mock_db, store, guard, verifier).validate_purchase(
            no_email, _android_request(), now=NOW
        )

        assert result.membership_status == "trial"
        assert guard.records[no_email.user_id] is None


class TestErrorCategorization:
    """Client errors pass through, everything else becomes internal."""

    @pytest.mark.asyncio
    async def test_upstream_failure_becomes_internal(self, mock_db, store, guard, caller):
        verifier = _verifier(error=UpstreamVerificationError("status 21003", status=21003))

        with pytest.raises(UnexpectedInternalError) as exc:
            await _service(mock_db, store, guard, verifier).validate_purchase(
                caller, _ios_request(), now=NOW
            )

        assert exc.value.message == "Validation failed"
        assert exc.value.code == "internal"
        assert "21003" not in str(exc.value.detail)
        assert store.merge_calls == []

    @pytest.mark.asyncio
    async def test_configuration_error_passes_through(self, mock_db, store, guard, caller):
        verifier = _verifier(error=ConfigurationError("Apple shared secret not configured"))

        with pytest.raises(ConfigurationError) as exc:
            await _service(mock_db, store, guard, verifier).validate_purchase(
                caller, _ios_request(), now=NOW
            )

        assert exc.value.code == "failed-precondition"

    @pytest.mark.asyncio
    async def test_not_found_from_resolver_passes_through(self, mock_db, store, guard, caller):
        evidence = IosSubscriptionEvidence(latest_receipt_info=[])

        with pytest.raises(NotFoundError) as exc:
            await _service(mock_db, store, guard, _verifier(evidence)).validate_purchase(
                caller, _ios_request(), now=NOW
            )

        assert exc.value.message == "No matching subscription found in receipt"

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_internal(self, mock_db, store, guard, caller):
        verifier = _verifier(error=RuntimeError("boom"))

        with pytest.raises(UnexpectedInternalError):
            await _service(mock_db, store, guard, verifier).validate_purchase(
                caller, _android_request(), now=NOW
            )


class TestValidateEndpoint:
    """Tests for POST /api/v1/purchases/validate"""

    @pytest.mark.asyncio
    async def test_requires_bearer_token(self, client: AsyncClient):
        with patch(
            "entitlement_engine.core.rate_limit.get_redis",
            AsyncMock(side_effect=ConnectionError("redis down")),
        ):
            response = await client.post(
                "/api/v1/purchases/validate",
                json={"platform": "ios", "productId": MONTHLY_SKU, "receipt": "r"},
            )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthenticated"

    @pytest.mark.asyncio
    async def test_missing_receipt_is_invalid_argument(self, client: AsyncClient, mock_db, caller):
        result = MagicMock()
        result.scalar_one_or_none.return_value = caller
        mock_db.execute.return_value = result
        token = create_token_for_user(caller.user_id, caller.email)

        with patch(
            "entitlement_engine.core.rate_limit.get_redis",
            AsyncMock(side_effect=ConnectionError("redis down")),
        ):
            response = await client.post(
                "/api/v1/purchases/validate",
                json={"platform": "ios", "productId": MONTHLY_SKU},
                headers={"Authorization": f"Bearer {token}"},
            )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid-argument"
