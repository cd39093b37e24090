"""
Account Deletion Service
========================

Removes everything stored for a user except their trial history, then the
identity record itself.

The data subtree is rooted at ``user_entitlements``; child tables reference
it with ``ON DELETE CASCADE``, so a single delete normally clears it. If
that statement fails, every mapped table carrying a ``user_id`` column is
cleared in bounded batches before the root row is removed.
"""

import logging
from typing import Optional
import uuid

from sqlalchemy import Table, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.core.errors import AuthenticationError, UnexpectedInternalError
from entitlement_engine.db.base import Base
from entitlement_engine.models.entitlement import UserEntitlement
from entitlement_engine.models.trial_history import TrialHistory
from entitlement_engine.models.user import User

logger = logging.getLogger(__name__)


class AccountDeletionCoordinator:
    """Service for user-initiated account deletion."""

    BATCH_SIZE = 500

    # Never touched by data cleanup
    PRESERVED_TABLES = frozenset({TrialHistory.__tablename__, User.__tablename__})

    def __init__(self, db: AsyncSession):
        self.db = db

    async def delete_account(self, caller: Optional[User]) -> dict:
        """
        Delete the caller's data and identity record.

        Returns:
            ``{"success": True}``

        Raises:
            AuthenticationError: No authenticated caller
            UnexpectedInternalError: Data or identity deletion failed
        """
        if caller is None:
            raise AuthenticationError()

        user_id = caller.user_id

        try:
            await self._delete_user_data(user_id)
            await self.db.commit()
        except Exception:
            logger.exception("Account data deletion failed: user=%s", user_id)
            await self.db.rollback()
            raise UnexpectedInternalError("Failed to delete account")

        try:
            await self._delete_identity(user_id)
            await self.db.commit()
        except Exception:
            logger.exception("Identity deletion failed after data cleanup: user=%s", user_id)
            await self.db.rollback()
            raise UnexpectedInternalError("Failed to delete account")

        logger.info("Account deleted: user=%s", user_id)
        return {"success": True}

    # -------------------------------------------------------------------------
    # Data subtree
    # -------------------------------------------------------------------------

    async def _delete_user_data(self, user_id: uuid.UUID) -> None:
        try:
            async with self.db.begin_nested():
                await self.db.execute(
                    delete(UserEntitlement).where(UserEntitlement.user_id == user_id)
                )
        except SQLAlchemyError as e:
            logger.warning(
                "Cascading delete failed for user=%s, deleting table by table: %s",
                user_id,
                e,
            )
            await self._delete_user_data_by_table(user_id)

    def _user_tables(self) -> list[Table]:
        """Tables holding per-user rows, children before parents."""
        root = UserEntitlement.__table__
        return [
            table
            for table in reversed(Base.metadata.sorted_tables)
            if "user_id" in table.c
            and table.name not in self.PRESERVED_TABLES
            and table is not root
        ]

    async def _delete_in_batches(self, table: Table, user_id: uuid.UUID) -> int:
        """Delete a user's rows from ``table`` at most BATCH_SIZE at a time."""
        pk_column = list(table.primary_key.columns)[0]
        deleted = 0

        while True:
            result = await self.db.execute(
                select(pk_column).where(table.c.user_id == user_id).limit(self.BATCH_SIZE)
            )
            ids = list(result.scalars().all())
            if not ids:
                break

            await self.db.execute(delete(table).where(pk_column.in_(ids)))
            deleted += len(ids)

            if len(ids) < self.BATCH_SIZE:
                break

        return deleted

    async def _delete_user_data_by_table(self, user_id: uuid.UUID) -> None:
        for table in self._user_tables():
            deleted = await self._delete_in_batches(table, user_id)
            if deleted:
                logger.info("Deleted %d rows from %s for user=%s", deleted, table.name, user_id)

        root = UserEntitlement.__table__
        await self.db.execute(delete(root).where(root.c.user_id == user_id))

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    async def _delete_identity(self, user_id: uuid.UUID) -> None:
        result = await self.db.execute(
            delete(User)
            .where(User.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info("Identity record already gone: user=%s", user_id)
