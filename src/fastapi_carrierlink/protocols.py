"""Provider and storage protocols."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from fastapi_carrierlink.schemas import (
    CancelRequest,
    CancelResponse,
    CreateShipmentRequest,
    CreateShipmentResponse,
    GetLabelRequest,
    HealthCheckResponse,
    LabelResponse,
    LookupShipmentByReferenceRequest,
    ProviderCapabilities,
    QuoteRequest,
    QuoteResponse,
    ShipmentStatus,
    TrackingResponse,
    TrackRequest,
    WebhookRequest,
)


@runtime_checkable
class ShippingProvider(Protocol):
    """Normalized carrier adapter.

    ``find_shipment_by_reference`` and ``verify_webhook`` are optional;
    the router only calls them when the adapter defines them and its
    capabilities allow it.
    """

    provider: str
    capabilities: ProviderCapabilities

    async def quote(self, request: QuoteRequest) -> QuoteResponse: ...

    async def create_shipment(
        self, request: CreateShipmentRequest
    ) -> CreateShipmentResponse: ...

    async def get_label(self, request: GetLabelRequest) -> LabelResponse: ...

    async def track(self, request: TrackRequest) -> TrackingResponse: ...

    async def cancel(self, request: CancelRequest) -> CancelResponse: ...

    async def health_check(self) -> HealthCheckResponse: ...


@runtime_checkable
class ReferenceLookupProvider(Protocol):
    async def find_shipment_by_reference(
        self, request: LookupShipmentByReferenceRequest
    ) -> CreateShipmentResponse | None: ...


@runtime_checkable
class WebhookVerifyingProvider(Protocol):
    def verify_webhook(self, request: WebhookRequest) -> bool: ...


@runtime_checkable
class ShipmentStore(Protocol):
    """Persistence surface the provider router and flows depend on."""

    async def get_shipment_by_id(self, shipment_id: str) -> Any | None: ...

    async def update_shipment_status_monotonic(
        self, shipment_id: str, status: ShipmentStatus
    ) -> Any: ...

    async def mark_shipment_booked_from_provider(
        self,
        shipment_id: str,
        *,
        provider_order_id: str | None = None,
        provider_shipment_id: str | None = None,
        provider_awb: str | None = None,
        status: ShipmentStatus | None = None,
        label_url: str | None = None,
        label_generated_at: datetime | None = None,
        label_expires_at: datetime | None = None,
        label_last_fetched_at: datetime | None = None,
        label_status: str | None = None,
        replay_buffered_events: bool = True,
    ) -> Any | None: ...

    async def replay_buffered_events_for_shipment(
        self, shipment_id: str
    ) -> dict[str, int]: ...
