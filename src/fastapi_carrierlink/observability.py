"""Structured log records for provider calls."""

from __future__ import annotations

import logging

from fastapi_carrierlink.correlation import get_correlation_id

logger = logging.getLogger(__name__)

PROVIDER_CALL_EVENT = "SHIPPING_PROVIDER_CALL"


def log_provider_call(
    *,
    provider: str,
    method: str,
    duration_ms: float,
    success: bool,
    error_code: str | None = None,
    correlation_id: str | None = None,
    shipment_id: str | None = None,
    provider_shipment_id: str | None = None,
) -> dict:
    """Emit one SHIPPING_PROVIDER_CALL record and return its fields."""
    fields = {
        "event": PROVIDER_CALL_EVENT,
        "provider": provider.strip().lower(),
        "method": method.strip().lower(),
        "duration_ms": max(0, round(duration_ms)),
        "success": success,
        "error_code": error_code.upper() if error_code else None,
        "correlation_id": correlation_id or get_correlation_id(),
        "shipment_id": shipment_id,
        "provider_shipment_id": provider_shipment_id,
    }
    logger.log(
        logging.INFO if success else logging.ERROR,
        "%s provider=%s method=%s success=%s error_code=%s duration_ms=%d",
        PROVIDER_CALL_EVENT,
        fields["provider"],
        fields["method"],
        success,
        fields["error_code"],
        fields["duration_ms"],
        extra={"carrierlink": fields},
    )
    return fields
