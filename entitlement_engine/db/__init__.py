"""Database base model and session helpers."""

from entitlement_engine.db.base import Base, TimestampMixin
from entitlement_engine.db.session import close_db, get_db, init_db

__all__ = ["Base", "TimestampMixin", "get_db", "init_db", "close_db"]
