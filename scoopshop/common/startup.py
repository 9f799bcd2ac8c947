"""Startup-time helpers for safe config logging."""

from scoopshop.common.config import StorefrontSettings
from scoopshop.common.logging import logger


def _safe_value(name: str, value) -> str:
    """Return a printable value with redaction for secret-like or DSN fields."""

    if value is None or value == "":
        return "<unset>"
    if any(secret in name.upper() for secret in ["KEY", "SECRET", "PASSWORD", "TOKEN", "DSN"]):
        return "<redacted>"
    return str(value)


def log_startup_config(settings: StorefrontSettings) -> None:
    """Log the effective configuration for quick troubleshooting."""

    config = {
        name: _safe_value(name, value) for name, value in settings.model_dump().items()
    }
    logger.info("startup_config=%s", config)
