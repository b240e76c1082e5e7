"""Startup-time helpers for safe config logging."""

from nexuspay.common.config import CommonSettings
from nexuspay.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token")


def _safe_value(name: str, value) -> str:
    """Return a printable setting value, redacting secret-like field names."""

    if value is None:
        return "<unset>"
    if any(secret in name.lower() for secret in SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def startup_config(config: CommonSettings, fields: list[str]) -> dict[str, str]:
    snapshot = {"service": config.service_name}
    for field in fields:
        snapshot[field.upper()] = _safe_value(field, getattr(config, field, None))
    return snapshot


def log_startup_config(config: CommonSettings, fields: list[str]) -> None:
    """Log selected settings fields for quick troubleshooting."""

    logger.info("startup_config=%s", startup_config(config, fields))
