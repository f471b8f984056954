"""
Shared configuration management for Crewbook Entitlements.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ENTITLEMENTS_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/entitlements")
    cache_timeout_seconds: float = Field(default=5.0)

    # Billing provider
    billing_api_url: str = Field(default="https://api.stripe.com")
    billing_api_key: str = Field(default="")
    billing_price_id: str = Field(default="price_default")
    billing_timeout_seconds: float = Field(default=10.0)
    billing_retry_attempts: int = Field(default=3)
    billing_retry_base_delay: float = Field(default=0.5)
    billing_failure_threshold: int = Field(default=5)
    billing_recovery_timeout: float = Field(default=30.0)
    checkout_success_url: str = Field(
        default="http://localhost:3000/subscription/success?session_id={CHECKOUT_SESSION_ID}"
    )
    checkout_cancel_url: str = Field(default="http://localhost:3000/subscription/cancel")
    checkout_trial_days: int = Field(default=30)
    cancel_at_period_end: bool = Field(default=True)

    # Trial policy used until an administrator stores one
    default_trial_days: int = Field(default=90, ge=0)

    # Session decision cache
    session_ttl_seconds: int = Field(default=300)
    # In-process sessions idle this long, or beyond the cap, are forgotten
    session_idle_seconds: int = Field(default=1800, gt=0)
    max_sessions: int = Field(default=10000, gt=0)

    # Identity
    jwt_secret: str = Field(default="local-development-secret")
    jwt_audience: Optional[str] = Field(default="authenticated")
    jwt_algorithm: str = Field(default="HS256")
    # Shared secret the billing provider sends with subscription events
    billing_webhook_secret: str = Field(default="")

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: str = Field(default="http://localhost:4317")
    enable_console_tracing: bool = Field(default=False)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)
