"""Normalized shipping provider contract models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    field_validator,
    model_validator,
)

NonEmptyStr = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=1)
]
OptionalStr = Annotated[str, StringConstraints(strip_whitespace=True)]


class ShipmentStatus(StrEnum):
    """Normalized shipment status."""

    DRAFT = "DRAFT"
    BOOKING_IN_PROGRESS = "BOOKING_IN_PROGRESS"
    BOOKED = "BOOKED"
    PICKUP_SCHEDULED = "PICKUP_SCHEDULED"
    IN_TRANSIT = "IN_TRANSIT"
    OFD = "OFD"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RTO_INITIATED = "RTO_INITIATED"
    RTO_IN_TRANSIT = "RTO_IN_TRANSIT"
    RTO_DELIVERED = "RTO_DELIVERED"


class ShipmentLabelStatus(StrEnum):
    """Persisted label availability."""

    AVAILABLE = "AVAILABLE"
    EXPIRED = "EXPIRED"
    MISSING = "MISSING"
    REGEN_REQUIRED = "REGEN_REQUIRED"


class ContractModel(BaseModel):
    """Strict base for every contract payload."""

    model_config = ConfigDict(extra="forbid")


def _currency(value: str) -> str:
    value = value.strip()
    if len(value) != 3:
        raise ValueError("currency_code must be a 3-letter code")
    return value.upper()


CurrencyCode = Annotated[str, AfterValidator(_currency)]


class Address(ContractModel):
    name: NonEmptyStr
    phone: NonEmptyStr
    email: OptionalStr | None = None
    line1: NonEmptyStr
    line2: OptionalStr | None = None
    city: NonEmptyStr
    state: NonEmptyStr
    postal_code: NonEmptyStr
    country_code: str
    landmark: OptionalStr | None = None

    @field_validator("country_code")
    @classmethod
    def _country_code(cls, value: str) -> str:
        value = value.strip()
        if len(value) != 2:
            raise ValueError("country_code must be a 2-letter code")
        return value.upper()

    @field_validator("email")
    @classmethod
    def _email(cls, value: str | None) -> str | None:
        if value and "@" not in value:
            raise ValueError("email must be a valid address")
        return value


class ParcelDimensions(ContractModel):
    l: float = Field(gt=0)  # noqa: E741
    w: float = Field(gt=0)
    h: float = Field(gt=0)


class Parcel(ContractModel):
    weight_grams: float = Field(gt=0)
    dimensions_cm: ParcelDimensions
    declared_value: float | None = Field(default=None, ge=0)
    description: OptionalStr | None = None


class LineItem(ContractModel):
    sku: NonEmptyStr
    name: NonEmptyStr
    qty: int = Field(gt=0)
    unit_price: float | None = Field(default=None, ge=0)


class Cod(ContractModel):
    enabled: bool
    amount: float = Field(default=0, ge=0)


class QuoteRequest(ContractModel):
    internal_reference: NonEmptyStr | None = None
    correlation_id: NonEmptyStr | None = None
    currency_code: CurrencyCode
    pickup_address: Address
    delivery_address: Address
    parcels: list[Parcel] = Field(min_length=1)
    line_items: list[LineItem] | None = None
    cod: Cod | None = None


class QuoteOption(ContractModel):
    service_code: NonEmptyStr
    service_name: NonEmptyStr
    price: float = Field(ge=0)
    currency_code: CurrencyCode
    eta_days: int | None = Field(default=None, gt=0)
    cod_supported: bool | None = None
    metadata: dict[str, Any] | None = None


class QuoteResponse(ContractModel):
    quotes: list[QuoteOption]


class CreateShipmentRequest(ContractModel):
    internal_reference: NonEmptyStr
    idempotency_key: NonEmptyStr
    correlation_id: NonEmptyStr | None = None
    order_reference: NonEmptyStr
    currency_code: CurrencyCode
    pickup_address: Address
    delivery_address: Address
    parcels: list[Parcel] = Field(min_length=1)
    line_items: list[LineItem] = Field(min_length=1)
    cod: Cod = Field(default_factory=lambda: Cod(enabled=False, amount=0))
    notes: OptionalStr | None = None
    metadata: dict[str, Any] | None = None


class LabelResponse(ContractModel):
    shipment_id: NonEmptyStr
    label_url: NonEmptyStr
    mime_type: NonEmptyStr = "application/pdf"
    label_expires_at: datetime | None = None
    regenerated: bool = False

    @field_validator("label_url")
    @classmethod
    def _label_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("label_url must be an absolute http(s) URL")
        return value


class CreateShipmentResponse(ContractModel):
    shipment_id: NonEmptyStr
    tracking_number: NonEmptyStr | None = None
    tracking_url: NonEmptyStr | None = None
    status: ShipmentStatus
    label: LabelResponse | None = None
    booked_at: datetime | None = None
    metadata: dict[str, Any] | None = None


class GetLabelRequest(ContractModel):
    shipment_id: NonEmptyStr
    regenerate_if_expired: bool = True
    correlation_id: NonEmptyStr | None = None


class TrackRequest(ContractModel):
    shipment_id: NonEmptyStr | None = None
    tracking_number: NonEmptyStr | None = None
    internal_reference: NonEmptyStr | None = None
    correlation_id: NonEmptyStr | None = None

    @model_validator(mode="after")
    def _require_identifier(self) -> TrackRequest:
        if not (
            self.shipment_id or self.tracking_number or self.internal_reference
        ):
            raise ValueError(
                "At least one of shipment_id, tracking_number, or "
                "internal_reference is required"
            )
        return self


class TrackingEvent(ContractModel):
    status: ShipmentStatus
    occurred_at: datetime
    location: OptionalStr | None = None
    message: OptionalStr | None = None
    raw_status: OptionalStr | None = None


class TrackingResponse(ContractModel):
    shipment_id: NonEmptyStr
    tracking_number: NonEmptyStr | None = None
    status: ShipmentStatus
    events: list[TrackingEvent]


class CancelRequest(ContractModel):
    shipment_id: NonEmptyStr
    reason: OptionalStr | None = None
    correlation_id: NonEmptyStr | None = None


class CancelResponse(ContractModel):
    shipment_id: NonEmptyStr
    cancelled: bool
    status: ShipmentStatus
    cancelled_at: datetime | None = None


class HealthCheckResponse(ContractModel):
    ok: bool
    provider: NonEmptyStr
    checked_at: datetime
    details: dict[str, Any] | None = None


class LookupShipmentByReferenceRequest(ContractModel):
    internal_reference: NonEmptyStr
    correlation_id: NonEmptyStr | None = None


class ProviderCapabilities(ContractModel):
    """Declared adapter features consulted by the router."""

    supports_cod: bool
    supports_reverse: bool
    supports_label_regen: bool
    supports_webhooks: bool
    supports_cancel: bool
    supports_multi_piece: bool
    supports_idempotency: bool = False
    supports_reference_lookup: bool = False


class WebhookRequest(BaseModel):
    """Raw webhook delivery handed to ``verify_webhook``."""

    headers: dict[str, str] = Field(default_factory=dict)
    raw_body: bytes = b""
    body: dict[str, Any] | None = None


class WebhookResponse(BaseModel):
    """Summary returned by the webhook endpoint."""

    ok: bool = True
    provider: str
    event_id: str
    event_type: str
    processed: bool
    deduped: bool
    buffered: bool
    matched: bool
    shipment_id: str | None = None
    status_updated: bool
    security_mode: str
    correlation_id: str


class ShipmentLabelResult(BaseModel):
    """Label of a persisted shipment, as served to clients."""

    shipment_id: str
    provider: str
    provider_shipment_id: str | None = None
    label_url: str
    label_expires_at: datetime | None = None
    label_status: ShipmentLabelStatus
    refreshed: bool
