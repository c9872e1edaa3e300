"""Configuration settings for the Fixer payments backend."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Supabase
    supabase_url: str
    supabase_secret_key: str | None = None  # Backend/admin access
    # Legacy key (deprecated, will be removed)
    supabase_service_role_key: str | None = None

    # JWT
    jwt_secret_key: str  # Required - no default for security
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 7  # 1 week

    # Stripe
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_timeout_seconds: int = 30
    currency: str = "usd"

    # Marketplace economics
    service_fee: Decimal = Decimal("2.50")  # Flat platform fee per job
    min_payment_amount: Decimal = Decimal("10")
    max_payment_amount: Decimal = Decimal("10000")

    # App
    app_url: str = "http://localhost:5000"
    storage_backend: Literal["supabase", "memory"] = "supabase"
    debug: bool = False
    log_level: str = "INFO"
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5000",
    ]
    # Proxies allowed to set X-Forwarded-For (Railway internal, Docker, local)
    trusted_proxy_cidrs: list[str] = [
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "::1/128",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    @property
    def onboarding_refresh_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/settings/payments?refresh=true"

    @property
    def onboarding_return_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/settings/payments?success=true"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
