"""
Trial Abuse Guard
=================

Answers "has this person already had a free trial?" from the
``trial_history`` table, which outlives account deletion.

Records are keyed by user id and optionally carry a salted hash of the
account e-mail, so a re-created account can be matched even when the
identity provider issues a new user id.
"""

import logging
from typing import Optional
import uuid

from sqlalchemy import or_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.core.security import hash_identity
from entitlement_engine.models.trial_history import TrialHistory

logger = logging.getLogger(__name__)


class TrialAbuseGuard:
    """Service for trial-history lookups and write-once recording."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def has_used_trial(
        self,
        user_id: uuid.UUID,
        identity: Optional[str] = None,
    ) -> bool:
        """
        Check whether a trial was already consumed.

        Args:
            user_id: Account id
            identity: Stable identity (e-mail); matched by hash when given

        Returns:
            True if a record exists for the user id or the identity hash.
        """
        condition = TrialHistory.user_id == user_id
        if identity:
            condition = or_(
                condition,
                TrialHistory.identity_hash == hash_identity(identity),
            )

        stmt = select(TrialHistory.user_id).where(condition).limit(1)
        result = await self.db.execute(stmt)
        return result.first() is not None

    async def record_trial_usage(
        self,
        user_id: uuid.UUID,
        identity: Optional[str] = None,
    ) -> None:
        """
        Record that ``user_id`` started a trial.

        Insert-if-absent: an existing record for the same user id is left
        untouched, so ``first_trial_date`` never moves.
        """
        stmt = (
            insert(TrialHistory)
            .values(
                user_id=user_id,
                identity_hash=hash_identity(identity) if identity else None,
            )
            .on_conflict_do_nothing(index_elements=[TrialHistory.user_id])
        )
        await self.db.execute(stmt)

        logger.info("Trial usage recorded: user=%s", user_id)
