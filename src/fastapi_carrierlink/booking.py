"""Shipment booking orchestration."""

from __future__ import annotations

import logging
from typing import Any

from fastapi_carrierlink.contrib.sqlalchemy.models import (
    ShipmentRecord,
    utcnow,
)
from fastapi_carrierlink.contrib.sqlalchemy.repository import (
    SQLAlchemyShipmentRepository,
)
from fastapi_carrierlink.exceptions import (
    ProviderErrorCode,
    ShippingProviderError,
)
from fastapi_carrierlink.provider_router import ProviderRouter
from fastapi_carrierlink.schemas import (
    CreateShipmentRequest,
    CreateShipmentResponse,
    ShipmentLabelStatus,
    ShipmentStatus,
)

logger = logging.getLogger(__name__)

BOOKING_FAILED = "SHIPPING_BOOKING_FAILED"


async def mark_booked_from_response(
    repository: SQLAlchemyShipmentRepository,
    shipment_id: str,
    response: CreateShipmentResponse,
    *,
    internal_reference: str,
) -> ShipmentRecord | None:
    """Store provider refs and label of a booking.

    The repository replays buffered events that match the new refs.
    """
    metadata = response.metadata or {}
    label = response.label
    now = utcnow()
    return await repository.mark_shipment_booked_from_provider(
        shipment_id,
        provider_order_id=(
            metadata.get("provider_order_id") or internal_reference
        ),
        provider_shipment_id=response.shipment_id,
        provider_awb=response.tracking_number,
        status=response.status,
        label_url=label.label_url if label else None,
        label_generated_at=response.booked_at or now,
        label_expires_at=label.label_expires_at if label else None,
        label_last_fetched_at=now,
        label_status=(
            ShipmentLabelStatus.AVAILABLE
            if label
            else ShipmentLabelStatus.MISSING
        ),
    )


async def book_shipment(
    *,
    router: ProviderRouter,
    repository: SQLAlchemyShipmentRepository,
    order_id: str,
    request: CreateShipmentRequest | dict[str, Any],
    provider: str | None = None,
    service_level: str | None = None,
    courier_code: str | None = None,
) -> ShipmentRecord | None:
    """Book a shipment for an order with the resolved provider.

    Returns the existing active shipment when the order is already
    booked with that provider, and None when booking is disabled.
    """
    request = CreateShipmentRequest.model_validate(request)
    if not router.booking_enabled:
        logger.info("Booking disabled, skipping order %s", order_id)
        return None

    provider_id = router.resolve_provider_id(provider)
    existing = await repository.list_active_shipments(order_id, provider_id)
    if existing:
        logger.info(
            "Order %s already has active shipment %s",
            order_id,
            existing[0].id,
        )
        return existing[0]

    shipment = await repository.create_shipment(
        order_id=order_id,
        provider=provider_id,
        internal_reference=request.internal_reference,
        status=ShipmentStatus.BOOKING_IN_PROGRESS,
        service_level=service_level,
        courier_code=courier_code,
        replay_buffered_events=False,
    )

    try:
        response = await router.create_shipment(request, provider_id)
    except ShippingProviderError as exc:
        if exc.code == ProviderErrorCode.BOOKING_DISABLED:
            logger.info(
                "Booking disabled by provider %s for order %s",
                provider_id,
                order_id,
            )
            return None
        logger.error(
            "Booking failed for shipment %s: %s %s",
            shipment.id,
            exc.code,
            exc.message,
        )
        raise
    except Exception as exc:
        logger.error(
            "Booking failed for shipment %s: %s %s",
            shipment.id,
            getattr(exc, "code", None) or BOOKING_FAILED,
            exc,
        )
        raise

    booked = await mark_booked_from_response(
        repository,
        shipment.id,
        response,
        internal_reference=request.internal_reference,
    )
    logger.info(
        "Booked shipment %s with %s as %s",
        shipment.id,
        provider_id,
        response.shipment_id,
    )
    return booked
