"""
Trial History Model
===================

Write-once record that a user (and optionally a hashed identity) has
consumed a free trial.

The table has no foreign key to ``users``; rows survive
account deletion so a re-created account cannot claim a second trial.
"""

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from entitlement_engine.db.base import Base


class TrialHistory(Base):
    """Trial consumption record keyed by user id."""

    __tablename__ = "trial_history"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
    )
    identity_hash: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    first_trial_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<TrialHistory(user_id={self.user_id}, first_trial_date={self.first_trial_date})>"
