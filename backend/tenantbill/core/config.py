from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class GatewayConfig:
    """Credentials and transport limits handed to the gateway client at construction."""

    base_url: str
    secret: str
    webhook_secret: str | None = None
    timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_wait_seconds: float = 0.5
    webhook_tolerance_seconds: int = 300
    currency: str = "JPY"


class Settings(BaseSettings):
    """
    Global settings for the billing service.
    Values are read from environment variables and the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    project_name: str = "Tenant Billing API"
    api_v1_str: str = "/api/v1"
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Identity boundary (JWT issued by the identity service)
    secret_key: str = "changeme"
    access_token_expire_minutes: int = 60
    algorithm: str = "HS256"

    # Database
    database_url: str = "sqlite:///./dev.db"

    # CORS
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
    ]

    # Billing
    billing_currency: str = "JPY"
    billing_tax_rate: float = 0.0
    billing_renewal_window_days: int = 3
    billing_invoice_due_days: int = 7
    billing_upgrade_due_days: int = 1
    billing_max_trial_days: int = 30
    billing_remote_subscriptions: bool = False

    # Payment gateway
    gateway_base_url: str = "https://api.gateway.example.com"
    gateway_secret: Optional[str] = None
    gateway_webhook_secret: Optional[str] = None
    gateway_timeout_seconds: float = 10.0
    gateway_max_retries: int = 3
    gateway_retry_wait_seconds: float = 0.5
    gateway_webhook_tolerance_seconds: int = 300

    def gateway_config(self) -> GatewayConfig:
        """Build the immutable gateway configuration from the current settings."""
        return GatewayConfig(
            base_url=self.gateway_base_url.rstrip("/"),
            secret=self.gateway_secret or "",
            webhook_secret=self.gateway_webhook_secret,
            timeout_seconds=self.gateway_timeout_seconds,
            max_retries=max(self.gateway_max_retries, 1),
            retry_wait_seconds=max(self.gateway_retry_wait_seconds, 0.0),
            webhook_tolerance_seconds=self.gateway_webhook_tolerance_seconds,
            currency=self.billing_currency,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()


settings = get_settings()
