"""Central environment-driven settings for the payment client and relay.

Loaded once per process. Behavior is controlled by environment variables
(see `.env.example`).
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "nexuspay"
    log_level: str = "INFO"
    api_base_url: str = "http://localhost:8000/api/"
    request_timeout_seconds: float = 30.0
    retry_max_retries: int = 2
    retry_base_delay_ms: int = 2000
    retry_statuses: list[int] = [504]
    order_retry_max_retries: int = 2
    merchant_name: str = "EV Nexus"
    default_currency: str = "INR"
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    relay_max_attempts: int = 1000
    relay_checkout_timeout_seconds: float = 900.0
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("api_base_url")
    @classmethod
    def _trailing_slash(cls, value: str) -> str:
        # Relative API paths are appended verbatim.
        return value if value.endswith("/") else f"{value}/"


settings = CommonSettings()
