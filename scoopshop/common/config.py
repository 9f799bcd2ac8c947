"""Environment-driven settings for the storefront checkout service.

Settings are loaded once by the process entrypoint and handed to every
collaborator explicitly (see `.env.example` for the variable names).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class StorefrontSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "checkout"
    log_level: str = "INFO"
    postgres_dsn: str
    redis_url: str = "redis://redis:6379/0"
    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_webhook_tolerance_seconds: int = 300
    stripe_shipping_price_id: str | None = None
    currency: str = "usd"
    # redis | database | memory
    checkout_attempt_backend: str = "redis"
    checkout_attempt_ttl_seconds: int = 7 * 86400
    otel_exporter_otlp_endpoint: str = ""
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


def load_settings() -> StorefrontSettings:
    """Read settings from the environment; called once per process."""

    return StorefrontSettings()
