"""
Configuration and settings for the FoodShare API.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Routes are mounted at the root so existing clients keep working.
    api_prefix: str = Field(default="")
    log_level: str = Field(default="INFO")
    allowed_origins: list[str] = Field(
        default=["http://localhost:5173", "https://assignment11-b015f.web.app"]
    )

    # Document store: MongoDB when configured, otherwise any SQLAlchemy URL.
    mongodb_uri: Optional[str] = Field(default=None)
    mongodb_database: str = Field(default="foodshare")
    mongodb_timeout_ms: int = Field(default=5000)
    database_url: Optional[str] = Field(default=None)

    # Identity provider (Firebase service account JSON)
    firebase_service_account: Optional[str] = Field(default=None)
    identity_timeout_seconds: float = Field(default=5.0)

    # Payment processor (Stripe)
    stripe_secret_key: Optional[str] = Field(default=None)
    stripe_api_base: str = Field(default="https://api.stripe.com")
    payment_currency: str = Field(default="usd")
    payment_timeout_seconds: float = Field(default=10.0)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
