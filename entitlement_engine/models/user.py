"""
User Model
==========

SQLAlchemy model for the identity record of an account.
"""

from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from entitlement_engine.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from entitlement_engine.models.entitlement import UserEntitlement


class User(Base, TimestampMixin):
    """
    User identity model.

    Authenticated callers are resolved from this table. Deleting the row is
    the last step of account deletion.
    """

    __tablename__ = "users"

    # Primary Key
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Account fields
    email: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        index=True,
    )
    full_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Relationships
    entitlement: Mapped[Optional["UserEntitlement"]] = relationship(
        "UserEntitlement",
        uselist=False,
        lazy="raise",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User(user_id={self.user_id}, email={self.email})>"
