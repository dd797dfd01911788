"""Shipment label resolution with provider refresh."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from fastapi_carrierlink.contrib.sqlalchemy.models import (
    ShipmentRecord,
    utcnow,
)
from fastapi_carrierlink.contrib.sqlalchemy.repository import (
    SQLAlchemyShipmentRepository,
)
from fastapi_carrierlink.correlation import get_correlation_id
from fastapi_carrierlink.exceptions import (
    ShipmentLabelError,
    ShippingProviderError,
)
from fastapi_carrierlink.provider_router import ProviderRouter
from fastapi_carrierlink.schemas import (
    GetLabelRequest,
    ShipmentLabelResult,
    ShipmentLabelStatus,
)

logger = logging.getLogger(__name__)

_UNUSABLE_LABEL_STATUSES = frozenset(
    {
        ShipmentLabelStatus.EXPIRED,
        ShipmentLabelStatus.MISSING,
        ShipmentLabelStatus.REGEN_REQUIRED,
    }
)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def is_label_expired(shipment: ShipmentRecord, now: datetime) -> bool:
    if shipment.label_status in _UNUSABLE_LABEL_STATUSES:
        return True
    expires_at = _as_utc(shipment.label_expires_at)
    return expires_at is not None and now >= expires_at


def _result(
    shipment: ShipmentRecord, *, refreshed: bool
) -> ShipmentLabelResult:
    return ShipmentLabelResult(
        shipment_id=shipment.id,
        provider=shipment.provider,
        provider_shipment_id=shipment.provider_shipment_id,
        label_url=shipment.label_url or "",
        label_expires_at=_as_utc(shipment.label_expires_at),
        label_status=ShipmentLabelStatus(shipment.label_status),
        refreshed=refreshed,
    )


async def resolve_shipment_label(
    shipment_id: str,
    *,
    router: ProviderRouter,
    repository: SQLAlchemyShipmentRepository,
    correlation_id: str | None = None,
    now: Callable[[], datetime] = utcnow,
) -> ShipmentLabelResult:
    """Serve the stored label, refreshing it from the carrier when stale.

    A provider failure while the stored label is missing or expired
    marks it EXPIRED before the error propagates.
    """
    current = now()
    correlation_id = correlation_id or get_correlation_id()
    shipment_id = (shipment_id or "").strip()
    if not shipment_id:
        raise ShipmentLabelError(
            "SHIPMENT_ID_REQUIRED", "shipment_id is required.", 400
        )

    shipment = await repository.get_shipment_by_id(shipment_id)
    if shipment is None:
        raise ShipmentLabelError(
            "SHIPMENT_NOT_FOUND",
            f"Shipment {shipment_id} was not found.",
            404,
        )

    expired = is_label_expired(shipment, current)
    if shipment.label_url and not expired:
        touched = await repository.update_shipment_label(
            shipment.id,
            label_status=ShipmentLabelStatus.AVAILABLE,
            label_last_fetched_at=current,
        )
        return _result(touched or shipment, refreshed=False)

    provider_reference = (
        shipment.provider_shipment_id or shipment.provider_awb
    )
    if not provider_reference:
        raise ShipmentLabelError(
            "SHIPMENT_PROVIDER_REFERENCE_MISSING",
            f"Shipment {shipment.id} is missing provider references.",
            409,
        )

    try:
        label = await router.get_label(
            GetLabelRequest(
                shipment_id=provider_reference,
                regenerate_if_expired=True,
                correlation_id=correlation_id,
            ),
            shipment.provider,
        )
    except ShippingProviderError as exc:
        if expired or not shipment.label_url:
            await repository.update_shipment_label(
                shipment.id,
                label_status=ShipmentLabelStatus.EXPIRED,
                label_last_fetched_at=current,
            )
        logger.error(
            "Failed to refresh label of shipment %s: %s",
            shipment.id,
            exc.code,
        )
        raise

    updated = await repository.update_shipment_label(
        shipment.id,
        label_status=ShipmentLabelStatus.AVAILABLE,
        label_url=label.label_url,
        label_generated_at=current,
        label_expires_at=label.label_expires_at,
        label_last_fetched_at=current,
    )
    return _result(updated or shipment, refreshed=True)
