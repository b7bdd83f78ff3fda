"""
Service configuration for the Marketplace Payments API.

Settings are read from environment variables (a `.env` file is loaded by
start_api.py before the app is imported). Variable names are the field names
in upper case, e.g. STRIPE_SECRET_KEY or PLATFORM_FEE_RATE.
"""

import logging
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime settings for the payments service."""

    environment: str = Field(default="development", description="Deployment environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8000, description="Bind port")

    supabase_url: Optional[str] = Field(None, description="Supabase project URL")
    supabase_service_role_key: Optional[str] = Field(None, description="Supabase service role key")

    stripe_secret_key: Optional[str] = Field(None, description="Stripe secret API key")
    stripe_webhook_secret: Optional[str] = Field(None, description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2024-06-20", description="Pinned Stripe API version")

    platform_fee_rate: Decimal = Field(default=Decimal("0.05"), description="Platform fee on destination charges")
    default_currency: str = Field(default="usd", description="Currency used when a request omits one")
    connect_country: str = Field(default="US", description="Country for new Express accounts")
    frontend_url: str = Field(default="http://localhost:8081", description="Client app base URL")

    allowed_origins: str = Field(
        default="http://localhost:8081,http://localhost:19006",
        description="CORS origins (comma-separated)",
    )
    rate_limit_enabled: bool = Field(default=True, description="Enable slowapi rate limits")

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    def get_allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def onboarding_refresh_url(self) -> str:
        return f"{self.frontend_url}/merchant/onboarding/refresh"

    @property
    def onboarding_return_url(self) -> str:
        return f"{self.frontend_url}/merchant/onboarding/complete"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance, also used as a FastAPI dependency."""
    settings = Settings()
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY not set. Payment endpoints will fail.")
    if not settings.supabase_url or not settings.supabase_service_role_key:
        logger.warning("Supabase credentials not found. Database access will fail.")
    return settings
