"""Scheduled maintenance jobs.

Each job is a plain coroutine for the host application's scheduler;
limits default to the values in :class:`CarrierLinkConfig`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from fastapi_carrierlink.booking import mark_booked_from_response
from fastapi_carrierlink.config import CarrierLinkConfig
from fastapi_carrierlink.contrib.sqlalchemy.models import utcnow
from fastapi_carrierlink.contrib.sqlalchemy.repository import (
    SQLAlchemyShipmentRepository,
)
from fastapi_carrierlink.provider_router import ProviderRouter
from fastapi_carrierlink.schemas import LookupShipmentByReferenceRequest

logger = logging.getLogger(__name__)

BOOKING_RECOVERY_FAILED = "SHIPPING_BOOKING_RECOVERY_FAILED"


async def run_webhook_replay(
    repository: SQLAlchemyShipmentRepository,
    config: CarrierLinkConfig | None = None,
    *,
    limit: int | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    config = config or CarrierLinkConfig()
    counts = await repository.replay_buffered_events(
        limit=limit or config.webhook_replay_batch_size,
        now=now,
        max_attempts=config.webhook_replay_max_attempts,
    )
    logger.info("Webhook replay executed: %s", counts)
    return counts


async def run_payload_purge(
    repository: SQLAlchemyShipmentRepository,
    config: CarrierLinkConfig | None = None,
    *,
    ttl_days: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    config = config or CarrierLinkConfig()
    result = await repository.purge_expired_sanitized_payloads(
        ttl_days=ttl_days or config.events_payload_ttl_days, now=now
    )
    logger.info(
        "Scrubbed %d event and %d buffered payloads older than %s",
        result["scrubbed_count"],
        result["buffer_scrubbed_count"],
        result["cutoff_at"].isoformat(),
    )
    return result


async def run_booking_recovery(
    router: ProviderRouter,
    repository: SQLAlchemyShipmentRepository,
    config: CarrierLinkConfig | None = None,
    *,
    limit: int | None = None,
    older_than_minutes: int | None = None,
    correlation_id: str | None = None,
) -> dict[str, int]:
    """Resolve shipments stuck in BOOKING_IN_PROGRESS.

    Each stuck shipment is looked up at its carrier by internal
    reference; found bookings are marked booked and their buffered
    webhooks replayed. Per-shipment failures are counted, not raised.
    """
    config = config or CarrierLinkConfig()
    limit = limit or config.booking_recovery_limit
    if older_than_minutes is None:
        older_than_minutes = config.booking_recovery_older_than_minutes
    older_than = utcnow() - timedelta(minutes=older_than_minutes)

    stuck = await repository.list_stuck_booking_in_progress(
        older_than, limit=limit
    )
    result = {
        "scanned": len(stuck),
        "recovered": 0,
        "unresolved": 0,
        "failed": 0,
    }

    for shipment in stuck:
        try:
            found = await router.lookup_shipment_by_reference(
                LookupShipmentByReferenceRequest(
                    internal_reference=shipment.internal_reference,
                    correlation_id=correlation_id,
                ),
                shipment.provider,
            )
            if found is None:
                result["unresolved"] += 1
                continue

            updated = await mark_booked_from_response(
                repository,
                shipment.id,
                found,
                internal_reference=shipment.internal_reference,
            )
            if updated is None:
                result["unresolved"] += 1
                continue
            result["recovered"] += 1
            logger.info(
                "Recovered booking of shipment %s as %s",
                shipment.id,
                found.shipment_id,
            )
        except Exception as exc:
            result["failed"] += 1
            logger.error(
                "Booking recovery failed for shipment %s (%s): %s",
                shipment.id,
                shipment.provider,
                getattr(exc, "code", None) or BOOKING_RECOVERY_FAILED,
            )

    logger.info("Booking recovery executed: %s", result)
    return result
