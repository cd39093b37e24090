"""
Purchase API Endpoints
======================

Client-initiated purchase validation.
"""

import logging

from fastapi import APIRouter, Depends

from entitlement_engine.core.rate_limit import create_rate_limit_dependency
from entitlement_engine.dependencies import CurrentUserOptional, DBSession
from entitlement_engine.schemas.purchase import PurchaseRequest, ValidatePurchaseResult
from entitlement_engine.services.purchase_validation import PurchaseValidationService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/validate",
    response_model=ValidatePurchaseResult,
    dependencies=[Depends(create_rate_limit_dependency("validate"))],
)
async def validate_purchase(
    request: PurchaseRequest,
    current_user: CurrentUserOptional,
    db: DBSession,
) -> ValidatePurchaseResult:
    """
    Validate a store receipt (iOS) or purchase token (Android).

    Returns the reconciled membership state. An entitlement that is still
    current is returned as stored without contacting the store.

    Errors use categorized codes: ``unauthenticated``, ``invalid-argument``,
    ``failed-precondition``, ``not-found`` and ``internal``.
    """
    service = PurchaseValidationService(db)
    return await service.validate_purchase(current_user, request)
