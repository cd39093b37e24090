"""
Shared Test Fixtures
====================

Environment, in-memory stand-ins for the persistence services, a mocked
database session and an ES256 key pair for signed-payload tests.
"""

import os

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-entitlement-engine-tests")
os.environ.setdefault("APPLE_SHARED_SECRET", "test-apple-shared-secret")
os.environ.setdefault("TRIAL_IDENTITY_SALT", "test-salt")
os.environ.setdefault("PLAY_PUSH_AUDIENCE_TOKEN", "")

import uuid
from datetime import datetime, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from httpx import ASGITransport, AsyncClient
from jose import jwk

from entitlement_engine.core.security import hash_identity
from entitlement_engine.db.session import get_db
from entitlement_engine.main import app
from entitlement_engine.models.entitlement import EntitlementEvent, UserEntitlement
from entitlement_engine.models.user import User

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def millis(dt: datetime) -> str:
    """Millisecond epoch string, the way the stores send timestamps."""
    return str(int(dt.timestamp() * 1000))


# ---------------------------------------------------------------------------
# In-memory fakes
# ---------------------------------------------------------------------------

class FakeEntitlementStore:
    """Dict-backed EntitlementStore with the same async interface."""

    def __init__(self):
        self.records: dict[uuid.UUID, UserEntitlement] = {}
        self.events: list[EntitlementEvent] = []
        self.merge_calls: list[tuple[uuid.UUID, dict]] = []

    def seed(self, user_id: uuid.UUID, **fields) -> UserEntitlement:
        record = UserEntitlement(
            user_id=user_id,
            membership_status=fields.pop("membership_status", "demo"),
            is_premium=fields.pop("is_premium", False),
            is_lifetime=fields.pop("is_lifetime", False),
            auto_renewing=fields.pop("auto_renewing", False),
            has_used_trial=fields.pop("has_used_trial", False),
            **fields,
        )
        self.records[user_id] = record
        return record

    async def get(self, user_id: uuid.UUID) -> Optional[UserEntitlement]:
        return self.records.get(user_id)

    async def merge(self, user_id: uuid.UUID, fields: dict[str, Any]) -> None:
        self.merge_calls.append((user_id, dict(fields)))
        record = self.records.get(user_id) or self.seed(user_id)
        for name, value in fields.items():
            setattr(record, name, value)
        record.last_validated = datetime.now(timezone.utc)

    async def find_user_by_android_token(self, token: str) -> Optional[UserEntitlement]:
        for record in self.records.values():
            if record.android_purchase_token == token:
                return record
        return None

    async def find_user_by_app_account_token(self, token: str) -> Optional[UserEntitlement]:
        for record in self.records.values():
            if record.app_account_token == token.lower():
                return record
        return None

    async def record_event(self, user_id: uuid.UUID, source, new_status: str, **kwargs) -> EntitlementEvent:
        event = EntitlementEvent(user_id=user_id, source=source, new_status=new_status, **kwargs)
        self.events.append(event)
        return event


class FakeTrialGuard:
    """Trial history that survives any number of account re-creations."""

    def __init__(self):
        self.records: dict[uuid.UUID, Optional[str]] = {}

    async def has_used_trial(self, user_id: uuid.UUID, identity: Optional[str] = None) -> bool:
        if user_id in self.records:
            return True
        if identity:
            return hash_identity(identity) in self.records.values()
        return False

    async def record_trial_usage(self, user_id: uuid.UUID, identity: Optional[str] = None) -> None:
        self.records.setdefault(user_id, hash_identity(identity) if identity else None)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_db():
    """AsyncSession stand-in."""
    db = MagicMock()
    db.execute = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    return db


@pytest.fixture
def store() -> FakeEntitlementStore:
    return FakeEntitlementStore()


@pytest.fixture
def guard() -> FakeTrialGuard:
    return FakeTrialGuard()


@pytest.fixture
def caller() -> User:
    return User(user_id=uuid.uuid4(), email="Member@Example.com")


@pytest.fixture(scope="session")
def es256_keys() -> dict:
    """Fresh P-256 key pair: private PEM for signing, JWKS for verifying."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")

    return {
        "private_pem": private_pem,
        "key_set": {"keys": [jwk.construct(public_pem, "ES256").to_dict()]},
    }


@pytest_asyncio.fixture
async def client(mock_db):
    """HTTP client bound to the app with the database session mocked out."""

    async def _override_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = _override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
