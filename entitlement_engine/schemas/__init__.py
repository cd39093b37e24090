"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from entitlement_engine.schemas.common import ErrorResponse, SuccessResponse
from entitlement_engine.schemas.purchase import PurchaseRequest, ValidatePurchaseResult

__all__ = [
    "ErrorResponse",
    "SuccessResponse",
    "PurchaseRequest",
    "ValidatePurchaseResult",
]
