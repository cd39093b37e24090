"""
Entitlement Store
=================

Persistence for per-user entitlement records and their audit trail.

Writes are merges: only the columns passed in are changed, and the
database stamps ``last_validated`` on every write.
"""

import logging
from datetime import datetime
from typing import Any, Optional
import uuid

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.core.security import mask_token
from entitlement_engine.models.entitlement import (
    EntitlementEvent,
    EventSource,
    UserEntitlement,
)

logger = logging.getLogger(__name__)


class EntitlementStore:
    """Service for reading and merging ``user_entitlements`` rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: uuid.UUID) -> Optional[UserEntitlement]:
        """Get the entitlement record for a user, if any."""
        stmt = (
            select(UserEntitlement)
            .where(UserEntitlement.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def merge(self, user_id: uuid.UUID, fields: dict[str, Any]) -> None:
        """
        Upsert the entitlement record, touching only ``fields``.

        Args:
            user_id: Owner of the record
            fields: Column name to value; columns not listed keep their
                stored value
        """
        stmt = insert(UserEntitlement).values(user_id=user_id, **fields)
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserEntitlement.user_id],
            set_={**fields, "last_validated": func.now()},
        )
        await self.db.execute(stmt)

        logger.debug("Entitlement merged: user=%s fields=%s", user_id, sorted(fields))

    async def find_user_by_android_token(self, token: str) -> Optional[UserEntitlement]:
        """First entitlement record whose stored Play purchase token matches."""
        stmt = (
            select(UserEntitlement)
            .where(UserEntitlement.android_purchase_token == token)
            .limit(1)
        )
        result = await self.db.execute(stmt)
        entitlement = result.scalars().first()

        if entitlement is None:
            logger.debug("No entitlement for android token=%s", mask_token(token))
        return entitlement

    async def find_user_by_app_account_token(self, token: str) -> Optional[UserEntitlement]:
        """First entitlement record whose StoreKit app account token matches."""
        stmt = (
            select(UserEntitlement)
            .where(UserEntitlement.app_account_token == token.lower())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def record_event(
        self,
        user_id: uuid.UUID,
        source: EventSource,
        new_status: str,
        previous_status: Optional[str] = None,
        notification_type: Optional[str] = None,
        product_id: Optional[str] = None,
        subscription_expiry: Optional[datetime] = None,
    ) -> EntitlementEvent:
        """Append an audit row for a reconciliation write."""
        event = EntitlementEvent(
            user_id=user_id,
            source=source,
            notification_type=notification_type,
            previous_status=previous_status,
            new_status=new_status,
            product_id=product_id,
            subscription_expiry=subscription_expiry,
        )
        self.db.add(event)
        await self.db.flush()
        return event
