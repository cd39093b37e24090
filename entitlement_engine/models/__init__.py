"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from entitlement_engine.models.user import User
from entitlement_engine.models.entitlement import (
    EntitlementEvent,
    EventSource,
    MembershipStatus,
    Platform,
    ProductTier,
    UserEntitlement,
)
from entitlement_engine.models.trial_history import TrialHistory

__all__ = [
    # User
    "User",
    # Entitlement
    "UserEntitlement",
    "EntitlementEvent",
    "MembershipStatus",
    "ProductTier",
    "Platform",
    "EventSource",
    # Trial history
    "TrialHistory",
]
