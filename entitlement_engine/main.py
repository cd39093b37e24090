"""
Entitlement Engine API - Main Application
=========================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent
import uvicorn

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from entitlement_engine.api.v1 import account, notifications, purchases
from entitlement_engine.config import settings
from entitlement_engine.core.errors import setup_exception_handlers
from entitlement_engine.db.session import close_db, init_db
from entitlement_engine.schemas.common import ErrorResponse
from entitlement_engine.services.cache import close_redis, init_redis

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

def _surface(path: str) -> str:
    """First segment after ``/api/v1`` (purchases, notifications, account)."""
    parts = path.strip("/").split("/")
    if len(parts) >= 3 and parts[:2] == ["api", "v1"]:
        return parts[2]
    return "meta"


def _transaction_attributes(scope, status_code: int, duration_ms: float) -> list[tuple]:
    route = scope.get("route")
    path = route.path if route else scope.get("path", "unknown")

    attributes = [
        ("http.method", scope.get("method", "")),
        ("http.route", path),
        ("http.status_code", status_code),
        ("http.duration_ms", round(duration_ms, 2)),
        ("api.surface", _surface(path)),
        ("environment", settings.ENVIRONMENT),
    ]

    # Starlette keeps request.state in scope["state"] as a dict
    state = scope.get("state")
    user_id = state.get("user_id") if isinstance(state, dict) else None
    if user_id:
        attributes.append(("enduser.id", str(user_id)))

    return attributes


class NewRelicTransactionMiddleware:
    """
    Tags every New Relic web transaction with route, status, latency, API
    surface and the authenticated user.

    Written as raw ASGI so handlers run in the caller's task and the
    agent's context-local spans (database, Redis, store calls) stay on the
    transaction.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        started = time.perf_counter()
        response_status = 500

        async def capture_status(message):
            nonlocal response_status
            if message["type"] == "http.response.start":
                response_status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, capture_status)
        finally:
            if newrelic.agent.current_transaction() is not None:
                elapsed_ms = (time.perf_counter() - started) * 1000
                newrelic.agent.add_custom_attributes(
                    _transaction_attributes(scope, response_status, elapsed_ms)
                )


def _warn_on_unsafe_settings() -> None:
    if not settings.TRIAL_IDENTITY_SALT:
        logger.warning(
            "TRIAL_IDENTITY_SALT is empty; trial history stores unsalted e-mail hashes"
        )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events for:
    - Database connection
    - Redis connection
    """
    logger.info("Starting Entitlement Engine API (environment=%s)", settings.ENVIRONMENT)
    _warn_on_unsafe_settings()

    # Continue startup even if a backend is down (for health checks)
    app.state.database_ready = False
    app.state.redis_ready = False

    try:
        await init_db()
        app.state.database_ready = True
    except Exception as e:
        logger.warning("Database connection failed: %s", e)

    try:
        await init_redis()
        app.state.redis_ready = True
    except Exception as e:
        logger.warning("Redis connection failed: %s", e)

    yield

    logger.info("Shutting down Entitlement Engine API")
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="Entitlement Engine API",
    description="""
## Purchase-Entitlement Reconciliation

Turns App Store and Google Play purchase evidence into one authoritative
membership state (demo, trial or premium) per user.

### Surfaces
- **Purchases**: client-submitted receipt / purchase-token validation
- **Notifications**: Play Real-Time Developer Notifications (Pub/Sub push)
  and App Store Server Notifications V2
- **Account**: account deletion that keeps trial history

### Rate Limits
- Purchase validation: configurable per caller (default 20 requests/minute)
    """,
    version=API_VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        code: {"model": ErrorResponse, "description": description}
        for code, description in (
            (400, "Invalid argument"),
            (401, "Not authenticated"),
            (404, "No matching purchase"),
            (412, "Verification credential not configured"),
            (422, "Validation error"),
            (429, "Rate limit exceeded"),
            (500, "Internal server error"),
        )
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Liveness check.

    Always healthy while the process serves requests; ``backends`` shows
    whether the database and Redis were reachable at startup.
    """
    return {
        "status": "healthy",
        "version": API_VERSION,
        "environment": settings.ENVIRONMENT,
        "backends": {
            "database": getattr(app.state, "database_ready", False),
            "redis": getattr(app.state, "redis_ready", False),
        },
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Entitlement Engine API",
        "version": API_VERSION,
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

app.include_router(purchases.router, prefix="/api/v1/purchases", tags=["Purchases"])
app.include_router(notifications.router, prefix="/api/v1/notifications", tags=["Notifications"])
app.include_router(account.router, prefix="/api/v1/account", tags=["Account"])


def run() -> None:
    """Serve the app on ``PORT`` (console script ``entitlement-engine``)."""
    uvicorn.run(
        "entitlement_engine.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.is_development,
    )


if __name__ == "__main__":
    run()
