"""
Purchase Schemas
================

Request and response bodies for purchase validation. Field names on the
wire are camelCase to match the mobile client.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PurchaseRequest(BaseModel):
    """
    Purchase evidence submitted by the client.

    Presence rules (``receipt`` for iOS, ``purchaseToken`` for Android) are
    enforced by the validation service so they surface as
    ``invalid-argument`` errors rather than schema errors.
    """

    model_config = ConfigDict(populate_by_name=True)

    receipt: Optional[str] = None
    purchase_token: Optional[str] = Field(default=None, alias="purchaseToken")
    platform: Optional[str] = None
    product_id: Optional[str] = Field(default=None, alias="productId")
    app_account_token: Optional[str] = Field(default=None, alias="appAccountToken")


class ValidatePurchaseResult(BaseModel):
    """Reconciled entitlement returned to the client."""

    model_config = ConfigDict(populate_by_name=True)

    valid: bool = True
    membership_status: str = Field(alias="membershipStatus")
    expiry_date: Optional[datetime] = Field(default=None, alias="expiryDate")
    trial_start_date: Optional[datetime] = Field(default=None, alias="trialStartDate")
    trial_end_date: Optional[datetime] = Field(default=None, alias="trialEndDate")
    auto_renewing: bool = Field(alias="autoRenewing")
    product_id: str = Field(alias="productId")
    has_used_trial: bool = Field(alias="hasUsedTrial")
    is_lifetime: bool = Field(default=False, alias="isLifetime")
