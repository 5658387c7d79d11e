"""
Application configuration using pydantic-settings.
Loads from environment variables / .env file.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


MPESA_SANDBOX_URL = "https://sandbox.safaricom.co.ke"
MPESA_PRODUCTION_URL = "https://api.safaricom.co.ke"


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "carmarket-payments"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # API Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Postgres
    database_url: str = ""

    # Redis (settlement events + Celery broker)
    redis_url: str = ""
    settlement_channel: str = "payments:settled"

    # M-Pesa (Daraja)
    mpesa_environment: Literal["sandbox", "production"] = "sandbox"
    mpesa_base_url: str = ""
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_business_short_code: str = "174379"
    mpesa_passkey: str = ""
    mpesa_callback_token: str = ""
    mpesa_timeout_seconds: float = 30.0
    mpesa_token_retry_attempts: int = 3
    mpesa_min_amount: int = 1
    mpesa_max_amount: int = 250000

    # Public URL the provider posts callbacks to
    callback_base_url: str = "http://localhost:8000"

    # Payment lifecycle
    push_expiry_minutes: int = 5
    expiry_sweep_interval_minutes: int = 2
    initiation_wait_seconds: float = 45.0

    # Timezone used for provider timestamps
    default_timezone: str = "Africa/Nairobi"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def mpesa_api_url(self) -> str:
        """Provider base URL, explicit override first."""
        if self.mpesa_base_url:
            return self.mpesa_base_url.rstrip("/")
        if self.mpesa_environment == "production":
            return MPESA_PRODUCTION_URL
        return MPESA_SANDBOX_URL

    @property
    def mpesa_callback_url(self) -> str:
        url = f"{self.callback_base_url.rstrip('/')}/webhooks/mpesa/callback"
        if self.mpesa_callback_token:
            url = f"{url}?token={self.mpesa_callback_token}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
