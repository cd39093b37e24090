"""
Health Check Tests
==================

Tests for the health check endpoints, New Relic attributes and the
server entry point.
"""

import logging
from unittest.mock import patch

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Test the health check endpoint."""
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()

    assert data["status"] == "healthy"
    assert "version" in data
    assert "environment" in data
    assert data["backends"] == {"database": False, "redis": False}


@pytest.mark.asyncio
async def test_root_endpoint(client: AsyncClient):
    """Test the root endpoint."""
    response = await client.get("/")

    assert response.status_code == 200
    data = response.json()

    assert data["name"] == "Entitlement Engine API"
    assert "version" in data


def test_transaction_attributes():
    """New Relic attributes carry the API surface and the caller."""
    from entitlement_engine.main import _transaction_attributes

    scope = {
        "method": "POST",
        "path": "/api/v1/purchases/validate",
        "state": {"user_id": "4f1c"},
    }

    attributes = dict(_transaction_attributes(scope, 200, 12.345))

    assert attributes["http.route"] == "/api/v1/purchases/validate"
    assert attributes["http.status_code"] == 200
    assert attributes["http.duration_ms"] == 12.35
    assert attributes["api.surface"] == "purchases"
    assert attributes["enduser.id"] == "4f1c"


def test_transaction_attributes_without_user():
    from entitlement_engine.main import _transaction_attributes

    attributes = dict(_transaction_attributes({"method": "GET", "path": "/health"}, 200, 1.0))

    assert attributes["api.surface"] == "meta"
    assert "enduser.id" not in attributes


def test_run_binds_configured_port():
    from entitlement_engine.config import settings
    from entitlement_engine.main import run

    with patch.object(settings, "PORT", 9123), \
            patch("entitlement_engine.main.uvicorn.run") as uvicorn_run:
        run()

    uvicorn_run.assert_called_once()
    assert uvicorn_run.call_args.args == ("entitlement_engine.main:app",)
    assert uvicorn_run.call_args.kwargs["port"] == 9123


@pytest.mark.parametrize("salt, warned", [("", True), ("pepper", False)])
def test_empty_trial_salt_warns(caplog, salt, warned):
    from entitlement_engine.config import settings
    from entitlement_engine.main import _warn_on_unsafe_settings

    with patch.object(settings, "TRIAL_IDENTITY_SALT", salt), \
            caplog.at_level(logging.WARNING, logger="entitlement_engine.main"):
        _warn_on_unsafe_settings()

    assert ("TRIAL_IDENTITY_SALT" in caplog.text) is warned
