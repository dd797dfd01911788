"""Deterministic in-memory carrier for development and tests."""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime, timedelta

from fastapi_carrierlink.schemas import (
    Address,
    CancelRequest,
    CancelResponse,
    Cod,
    CreateShipmentRequest,
    CreateShipmentResponse,
    GetLabelRequest,
    HealthCheckResponse,
    LabelResponse,
    LineItem,
    LookupShipmentByReferenceRequest,
    Parcel,
    ParcelDimensions,
    ProviderCapabilities,
    QuoteOption,
    QuoteRequest,
    QuoteResponse,
    ShipmentStatus,
    TrackingEvent,
    TrackingResponse,
    TrackRequest,
)

FAKE_PROVIDER = "fake"
FAKE_BASE_URL = "https://fake-provider.local"
LABEL_TTL = timedelta(hours=24)

_Timeline = tuple[tuple[ShipmentStatus, int], ...]

# Event offsets in hours before now, oldest first.
_EVENT_TIMELINES: dict[ShipmentStatus, _Timeline] = {
    ShipmentStatus.DELIVERED: (
        (ShipmentStatus.BOOKED, 18),
        (ShipmentStatus.IN_TRANSIT, 8),
        (ShipmentStatus.OFD, 3),
        (ShipmentStatus.DELIVERED, 0),
    ),
    ShipmentStatus.OFD: (
        (ShipmentStatus.BOOKED, 12),
        (ShipmentStatus.IN_TRANSIT, 5),
        (ShipmentStatus.OFD, 0),
    ),
    ShipmentStatus.IN_TRANSIT: (
        (ShipmentStatus.BOOKED, 8),
        (ShipmentStatus.IN_TRANSIT, 0),
    ),
}


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def fake_shipment_id(reference: str) -> str:
    return "fake_shp_" + _digest(reference.strip().lower())[:16]


def fake_tracking_number(reference: str) -> str:
    return "FAKE" + _digest(reference.strip().lower())[:12].upper()


def derive_fake_status(identifier: str) -> ShipmentStatus:
    nibble = int(_digest(identifier)[0], 16)
    if nibble <= 3:
        return ShipmentStatus.BOOKED
    if nibble <= 7:
        return ShipmentStatus.IN_TRANSIT
    if nibble <= 11:
        return ShipmentStatus.OFD
    return ShipmentStatus.DELIVERED


def _placeholder_address(name: str) -> Address:
    return Address(
        name=name,
        phone="9999999999",
        line1="Line 1",
        city="Chennai",
        state="TN",
        postal_code="600001",
        country_code="IN",
    )


class FakeProvider:
    """Carrier that answers every call locally and deterministically.

    Shipment ids and tracking numbers are derived from the internal
    reference, so booking the same reference twice yields the same
    shipment.
    """

    provider = FAKE_PROVIDER
    capabilities = ProviderCapabilities(
        supports_cod=True,
        supports_reverse=False,
        supports_label_regen=True,
        supports_webhooks=False,
        supports_cancel=True,
        supports_multi_piece=True,
        supports_idempotency=True,
        supports_reference_lookup=True,
    )

    def __init__(self) -> None:
        self.cancelled: set[str] = set()

    def _label(self, shipment_id: str) -> LabelResponse:
        return LabelResponse(
            shipment_id=shipment_id,
            label_url=f"{FAKE_BASE_URL}/labels/{shipment_id}.pdf",
            mime_type="application/pdf",
            label_expires_at=datetime.now(tz=UTC) + LABEL_TTL,
        )

    async def quote(self, request: QuoteRequest) -> QuoteResponse:
        weight = sum(parcel.weight_grams for parcel in request.parcels)
        cod_fee = 50 if request.cod and request.cod.enabled else 0
        return QuoteResponse(
            quotes=[
                QuoteOption(
                    service_code="fake_standard",
                    service_name="Fake Standard",
                    price=max(99, round(weight / 100) + cod_fee),
                    currency_code=request.currency_code,
                    eta_days=4,
                    cod_supported=True,
                    metadata={"provider": self.provider},
                )
            ]
        )

    async def create_shipment(
        self, request: CreateShipmentRequest
    ) -> CreateShipmentResponse:
        shipment_id = fake_shipment_id(request.internal_reference)
        tracking_number = fake_tracking_number(request.internal_reference)
        return CreateShipmentResponse(
            shipment_id=shipment_id,
            tracking_number=tracking_number,
            tracking_url=f"{FAKE_BASE_URL}/tracking/{tracking_number}",
            status=ShipmentStatus.BOOKED,
            label=self._label(shipment_id),
            booked_at=datetime.now(tz=UTC),
            metadata={
                "provider": self.provider,
                "internal_reference": request.internal_reference,
                "provider_order_id": request.internal_reference,
            },
        )

    async def find_shipment_by_reference(
        self, request: LookupShipmentByReferenceRequest
    ) -> CreateShipmentResponse | None:
        reference = request.internal_reference
        return await self.create_shipment(
            CreateShipmentRequest(
                internal_reference=reference,
                idempotency_key=reference,
                order_reference=reference,
                correlation_id=request.correlation_id,
                currency_code="INR",
                pickup_address=_placeholder_address("Fake Pickup"),
                delivery_address=_placeholder_address("Fake Delivery"),
                parcels=[
                    Parcel(
                        weight_grams=100,
                        dimensions_cm=ParcelDimensions(l=10, w=10, h=10),
                    )
                ],
                line_items=[LineItem(sku="FAKE-SKU", name="Fake Item", qty=1)],
                cod=Cod(enabled=False, amount=0),
            )
        )

    async def get_label(self, request: GetLabelRequest) -> LabelResponse:
        return self._label(request.shipment_id)

    async def track(self, request: TrackRequest) -> TrackingResponse:
        identifier = (
            request.tracking_number
            or request.shipment_id
            or request.internal_reference
            or ""
        )
        if {request.shipment_id, request.tracking_number} & self.cancelled:
            status = ShipmentStatus.CANCELLED
        else:
            status = derive_fake_status(identifier)

        now = datetime.now(tz=UTC)
        timeline = _EVENT_TIMELINES.get(status, ((ShipmentStatus.BOOKED, 0),))
        return TrackingResponse(
            shipment_id=request.shipment_id or fake_shipment_id(identifier),
            tracking_number=(
                request.tracking_number or fake_tracking_number(identifier)
            ),
            status=status,
            events=[
                TrackingEvent(
                    status=event_status,
                    occurred_at=now - timedelta(hours=offset),
                    message=f"fake:{event_status.value.lower()}",
                    raw_status=event_status.value,
                )
                for event_status, offset in timeline
            ],
        )

    async def cancel(self, request: CancelRequest) -> CancelResponse:
        self.cancelled.add(request.shipment_id)
        return CancelResponse(
            shipment_id=request.shipment_id,
            cancelled=True,
            status=ShipmentStatus.CANCELLED,
            cancelled_at=datetime.now(tz=UTC),
        )

    async def health_check(self) -> HealthCheckResponse:
        return HealthCheckResponse(
            ok=True,
            provider=self.provider,
            checked_at=datetime.now(tz=UTC),
            details={"mode": "fake"},
        )
