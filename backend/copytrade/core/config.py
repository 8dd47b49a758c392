"""
Application configuration management
Loads environment variables and provides type-safe configuration access
Supports both local .env files and cloud environment variables
"""

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from decimal import Decimal
from typing import Literal


def get_env_file() -> str | None:
    """
    Determine which .env file to use (if any).
    Priority: .env.production > .env > None (cloud env vars only)
    """
    if Path(".env.production").exists():
        return ".env.production"
    elif Path(".env").exists():
        return ".env"
    return None


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The relational database is optional: without DATABASE_URL every record
    lives in the JSON fallback document only.
    """

    model_config = SettingsConfigDict(
        env_file=get_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database (primary relational backend)
    DATABASE_URL: str | None = None
    DB_AUTO_CREATE: bool = True
    DB_POOL_SIZE: int = 5

    # JSON fallback document
    JSON_STORE_PATH: str = "data/db.json"

    # Redis (wallet events)
    REDIS_URL: str | None = None
    WALLET_EVENTS_CHANNEL: str = "wallet_events"

    # JWT Configuration - Support both JWT_SECRET and JWT_SECRET_KEY for backwards compatibility
    JWT_SECRET: str | None = None
    JWT_SECRET_KEY: str | None = None
    JWT_ALGORITHM: str = "HS256"

    @property
    def jwt_secret(self) -> str:
        """Get JWT secret from either JWT_SECRET or JWT_SECRET_KEY"""
        secret = self.JWT_SECRET or self.JWT_SECRET_KEY
        if not secret:
            raise ValueError("Either JWT_SECRET or JWT_SECRET_KEY must be set")
        return secret

    # Email (Resend)
    RESEND_API_KEY: str | None = None
    RESEND_FROM_EMAIL: str = "Copy Trade <noreply@copytrade.app>"
    RESEND_API_URL: str = "https://api.resend.com/emails"

    # Payments
    USD_TO_INR_RATE: Decimal = Decimal("83")
    USDT_ERC20_ADDRESS: str | None = None
    USDT_TRC20_ADDRESS: str | None = None
    USDT_WALLET_APP_LINK: str | None = None

    # Application URLs
    FRONTEND_URL: str = "http://localhost:3000"

    # Environment
    ENVIRONMENT: Literal["development", "staging", "production"] = "production"
    DEBUG: bool = False

    # CORS
    @property
    def CORS_ORIGINS(self) -> list[str]:
        """Get allowed CORS origins"""
        origins = [self.FRONTEND_URL]
        if self.ENVIRONMENT == "development":
            origins.extend([
                "http://localhost:3000",
                "http://localhost:8000"
            ])
        return origins

    # Rate Limiting
    RATE_LIMIT_PAYMENTS: str = "20/hour"
    RATE_LIMIT_ADMIN: str = "120/minute"


# Global settings instance
settings = Settings()
