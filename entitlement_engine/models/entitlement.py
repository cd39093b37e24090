"""
Entitlement Models
==================

SQLAlchemy models for the reconciled membership state of a user and the
audit trail of every write that changed it.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from entitlement_engine.db.base import Base


class MembershipStatus(str, Enum):
    """Entitlement level exposed to the client."""
    DEMO = "demo"
    TRIAL = "trial"
    PREMIUM = "premium"


class ProductTier(str, Enum):
    """Normalized product identifier."""
    MONTHLY = "monthly"
    ANNUAL = "annual"
    LIFETIME = "lifetime"


class Platform(str, Enum):
    """Purchase platform."""
    IOS = "ios"
    ANDROID = "android"


class EventSource(str, Enum):
    """Which entry point produced an entitlement write."""
    VALIDATION = "validation"
    PLAY_STORE_NOTIFICATION = "play_store_notification"
    APP_STORE_NOTIFICATION = "app_store_notification"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class UserEntitlement(Base):
    """
    Per-user entitlement record.

    Created or merged on the first successful validation or notification.
    ``last_validated`` is refreshed by the database on every merge.
    """

    __tablename__ = "user_entitlements"

    # Primary Key / Foreign Key
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        primary_key=True,
    )

    # Membership
    membership_status: Mapped[MembershipStatus] = mapped_column(
        SQLEnum(MembershipStatus, name="membership_status", values_callable=_enum_values),
        default=MembershipStatus.DEMO,
        nullable=False,
    )
    is_premium: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_lifetime: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    subscription_expiry: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,  # Null for lifetime
    )
    trial_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    trial_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    auto_renewing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    product_id: Mapped[Optional[ProductTier]] = mapped_column(
        SQLEnum(ProductTier, name="product_tier", values_callable=_enum_values),
        nullable=True,
    )
    has_used_trial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_validated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    # Store lookup keys
    platform: Mapped[Optional[Platform]] = mapped_column(
        SQLEnum(Platform, name="purchase_platform", values_callable=_enum_values),
        nullable=True,
    )
    android_purchase_token: Mapped[Optional[str]] = mapped_column(
        String(512),
        nullable=True,
        index=True,
    )
    app_account_token: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )

    # Relationships
    events: Mapped[list["EntitlementEvent"]] = relationship(
        "EntitlementEvent",
        back_populates="entitlement",
        order_by="desc(EntitlementEvent.created_at)",
        passive_deletes=True,
        lazy="raise",
    )

    def __repr__(self) -> str:
        return (
            f"<UserEntitlement(user_id={self.user_id}, "
            f"status={self.membership_status}, lifetime={self.is_lifetime})>"
        )


class EntitlementEvent(Base):
    """
    Entitlement audit trail.

    One row per reconciliation write, whatever the entry point.
    """

    __tablename__ = "entitlement_events"

    # Primary Key
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Key
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("user_entitlements.user_id", ondelete="CASCADE"),
        nullable=False,
    )

    # Event details
    source: Mapped[EventSource] = mapped_column(
        SQLEnum(EventSource, name="entitlement_event_source", values_callable=_enum_values),
        nullable=False,
    )
    notification_type: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    previous_status: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
    )
    new_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    product_id: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
    )
    subscription_expiry: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    # Relationships
    entitlement: Mapped["UserEntitlement"] = relationship(
        "UserEntitlement",
        back_populates="events",
        lazy="raise",
    )

    # Indexes
    __table_args__ = (
        Index("idx_entitlement_events_user", "user_id", "created_at"),
        Index("idx_entitlement_events_source", "source", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EntitlementEvent(user_id={self.user_id}, source={self.source})>"
