"""Shipment endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from fastapi_carrierlink.correlation import resolve_correlation_id
from fastapi_carrierlink.dependencies import (
    get_provider_router,
    get_repository,
)
from fastapi_carrierlink.labels import resolve_shipment_label
from fastapi_carrierlink.schemas import (
    CancelResponse,
    HealthCheckResponse,
    ShipmentLabelResult,
    TrackingResponse,
)

router = APIRouter()


class CancelShipmentBody(BaseModel):
    reason: str | None = None


@router.get(
    "/shipments/health",
    response_model=list[HealthCheckResponse],
)
async def shipments_health(
    provider_router=Depends(get_provider_router),
    correlation_id: str = Depends(resolve_correlation_id),
) -> list[HealthCheckResponse]:
    """Health of every registered provider."""
    return await provider_router.health_check_all()


@router.get(
    "/shipments/{shipment_id}/label",
    response_model=ShipmentLabelResult,
)
async def shipment_label(
    shipment_id: str,
    provider_router=Depends(get_provider_router),
    repository=Depends(get_repository),
    correlation_id: str = Depends(resolve_correlation_id),
) -> ShipmentLabelResult:
    """Return the shipment label, refreshing it when expired."""
    return await resolve_shipment_label(
        shipment_id,
        router=provider_router,
        repository=repository,
        correlation_id=correlation_id,
    )


@router.get(
    "/shipments/{shipment_id}/tracking",
    response_model=TrackingResponse,
)
async def shipment_tracking(
    shipment_id: str,
    provider_router=Depends(get_provider_router),
    correlation_id: str = Depends(resolve_correlation_id),
) -> TrackingResponse:
    """Track a persisted shipment at its carrier."""
    return await provider_router.track_shipment(
        shipment_id, correlation_id=correlation_id
    )


@router.post(
    "/shipments/{shipment_id}/cancel",
    response_model=CancelResponse,
)
async def cancel_shipment(
    shipment_id: str,
    body: CancelShipmentBody | None = Body(default=None),
    provider_router=Depends(get_provider_router),
    correlation_id: str = Depends(resolve_correlation_id),
) -> CancelResponse:
    """Cancel a persisted shipment at its carrier."""
    return await provider_router.cancel_by_shipment(
        shipment_id,
        reason=body.reason if body else None,
        correlation_id=correlation_id,
    )
