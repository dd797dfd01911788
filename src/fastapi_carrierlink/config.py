"""Carrier integration configuration."""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from fastapi_carrierlink.exceptions import ProviderConfigError

SHIPROCKET_DEFAULT_BASE_URL = "https://apiv2.shiprocket.in"


class ShiprocketSettings(BaseModel):
    """Credentials and tuning for the Shiprocket adapter."""

    token: str | None = None
    email: str | None = None
    password: str | None = None
    base_url: str = SHIPROCKET_DEFAULT_BASE_URL
    timeout_seconds: float = 15.0

    token_ttl_hours: float = 24
    token_refresh_skew_minutes: float = 10
    label_ttl_hours: float = 24

    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_ms: int = Field(default=200, ge=0)
    retry_jitter_ms: int = Field(default=100, ge=0)

    serviceability_path: str = "/v1/external/courier/serviceability/"
    rate_calculator_path: str = "/v1/external/courier/serviceability/"
    create_shipment_path: str = (
        "/v1/external/shipments/create/forward-shipment"
    )
    lookup_by_reference_path: str = "/v1/external/orders/show/{reference}"

    webhook_secret: str | None = None
    webhook_token: str | None = None
    webhook_ip_allowlist: str | None = None
    webhook_signature_header: str = "x-shiprocket-signature"

    def has_credentials(self) -> bool:
        return bool(self.token) or bool(self.email and self.password)

    def has_webhook_auth(self) -> bool:
        return bool(self.webhook_token) or bool(self.webhook_secret)


class CarrierLinkConfig(BaseSettings):
    """Runtime config for the carrier integration layer."""

    model_config = SettingsConfigDict(
        env_prefix="CARRIERLINK_",
        env_nested_delimiter="__",
    )

    default_provider: str | None = None
    booking_enabled: bool = True
    allow_unsigned_webhooks: bool = False

    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=0.2, ge=0)
    retry_jitter_seconds: float = Field(default=0.125, ge=0)

    breaker_consecutive_failures: int = Field(default=3, ge=1)
    breaker_error_rate_percent: float = Field(default=50, gt=0, le=100)
    breaker_window_size: int = Field(default=20, ge=1)
    breaker_open_seconds: float = Field(default=30, ge=0)

    webhook_replay_batch_size: int = Field(default=100, ge=1)
    webhook_replay_max_attempts: int = Field(default=24, ge=1)
    events_payload_ttl_days: int = Field(default=90, ge=1)
    booking_recovery_limit: int = Field(default=100, ge=1)
    booking_recovery_older_than_minutes: int = Field(default=10, ge=0)

    shiprocket: ShiprocketSettings = Field(
        default_factory=ShiprocketSettings
    )


def validate_provider_config(config: CarrierLinkConfig) -> None:
    """Fail fast when the selected provider cannot operate."""
    provider = (config.default_provider or "").strip().lower()
    if provider != "shiprocket":
        return

    missing: list[str] = []
    if not config.shiprocket.has_credentials():
        missing.append("shiprocket.token or shiprocket.email+password")
    if (
        not config.shiprocket.has_webhook_auth()
        and not config.allow_unsigned_webhooks
    ):
        missing.append("shiprocket.webhook_token or shiprocket.webhook_secret")

    if missing:
        raise ProviderConfigError(
            "Shiprocket is selected but its configuration is incomplete.",
            details={"provider": provider, "missing": missing},
        )
