"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000, description="Port to bind to (injected by the host platform)")

    # Database (PostgreSQL)
    DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # JWT Authentication
    JWT_SECRET: str = Field(default="change-this-secret-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=1440)  # 24 hours

    # CORS
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    # Apple receipt verification
    APPLE_SHARED_SECRET: str = Field(default="")
    APPLE_VERIFY_PRODUCTION_URL: str = Field(
        default="https://buy.itunes.apple.com/verifyReceipt"
    )
    APPLE_VERIFY_SANDBOX_URL: str = Field(
        default="https://sandbox.itunes.apple.com/verifyReceipt"
    )

    # App Store Server Notifications (signed JWS)
    APPLE_NOTIFICATION_JWKS_URL: str = Field(
        default="https://api.storekit.itunes.apple.com/inApps/v1/keys"
    )
    APPLE_JWKS_CACHE_TTL_SECONDS: int = Field(default=3600)

    # Google Play Developer API
    ANDROID_PACKAGE_NAME: str = Field(default="com.braveheartinnovations.debateai")
    GOOGLE_APPLICATION_CREDENTIALS: Optional[str] = Field(default=None)
    PLAY_PUSH_AUDIENCE_TOKEN: str = Field(
        default="",
        description="Shared token expected on the Pub/Sub push URL (empty disables the check)",
    )

    # Trial abuse prevention
    TRIAL_IDENTITY_SALT: str = Field(default="")

    # Outbound store calls (None disables the timeout)
    STORE_HTTP_TIMEOUT_SECONDS: Optional[float] = Field(default=10.0)

    # Requests per minute per caller on the validation endpoint
    VALIDATION_RATE_LIMIT: int = Field(default=20)

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL:
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
