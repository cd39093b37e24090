"""
Account API Endpoints
=====================

User-initiated account deletion.
"""

from fastapi import APIRouter

from entitlement_engine.dependencies import CurrentUserOptional, DBSession
from entitlement_engine.schemas.common import SuccessResponse
from entitlement_engine.services.account_deletion import AccountDeletionCoordinator

router = APIRouter()


@router.delete("", response_model=SuccessResponse)
async def delete_account(
    current_user: CurrentUserOptional,
    db: DBSession,
) -> dict:
    """
    Delete the caller's account.

    All per-user data and the identity record are removed. Trial history is
    kept so a re-created account cannot start a second free trial.
    """
    coordinator = AccountDeletionCoordinator(db)
    return await coordinator.delete_account(current_user)
