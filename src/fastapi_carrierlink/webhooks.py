"""Inbound carrier webhook processing."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from typing import Any

from fastapi_carrierlink.carriers.shiprocket_mapping import (
    SHIPROCKET_PROVIDER,
    NormalizedWebhookEvent,
    first_non_empty,
    normalize_shiprocket_webhook,
)
from fastapi_carrierlink.contrib.sqlalchemy.repository import (
    SQLAlchemyShipmentRepository,
)
from fastapi_carrierlink.correlation import get_correlation_id
from fastapi_carrierlink.exceptions import (
    ProviderErrorCode,
    ShippingProviderError,
)
from fastapi_carrierlink.protocols import WebhookVerifyingProvider
from fastapi_carrierlink.provider_router import ProviderRouter
from fastapi_carrierlink.schemas import WebhookRequest, WebhookResponse
from fastapi_carrierlink.statuses import derive_webhook_status

logger = logging.getLogger(__name__)

WEBHOOK_RECEIVED_EVENT = "SHIPPING_WEBHOOK_RECEIVED"
WEBHOOK_FAILED_EVENT = "SHIPPING_WEBHOOK_FAILED"
WEBHOOK_DEGRADED_EVENT = "WEBHOOK_SECURITY_DEGRADED"

SECURITY_MODE_VERIFIED = "verified"
SECURITY_MODE_OVERRIDE = "allow_unsigned_webhooks_override"
SECURITY_REASON_OVERRIDE = "verification_failed_but_override_enabled"

WebhookNormalizer = Callable[[Any, bytes], NormalizedWebhookEvent]


def normalize_generic_webhook(
    body: Any, raw_body: bytes = b""
) -> NormalizedWebhookEvent:
    """Normalize a webhook in the carrier-neutral field layout."""
    payload = body if isinstance(body, dict) else {}
    event_type = (
        first_non_empty(
            payload.get("event_type"),
            payload.get("event"),
            payload.get("status"),
        )
        or "webhook"
    )
    event_id = first_non_empty(
        payload.get("provider_event_id"),
        payload.get("event_id"),
        payload.get("id"),
    )
    if not event_id:
        event_id = "wh_" + hashlib.sha256(raw_body).hexdigest()

    return NormalizedWebhookEvent(
        provider_event_id=event_id,
        event_type=event_type,
        status=derive_webhook_status(event_type, payload),
        provider_shipment_id=first_non_empty(
            payload.get("provider_shipment_id"), payload.get("shipment_id")
        )
        or None,
        provider_awb=first_non_empty(
            payload.get("awb"), payload.get("tracking_number")
        )
        or None,
        provider_order_id=first_non_empty(payload.get("provider_order_id"))
        or None,
        internal_reference=first_non_empty(
            payload.get("internal_reference"), payload.get("order_id")
        )
        or None,
        payload=dict(payload),
    )


WEBHOOK_NORMALIZERS: dict[str, WebhookNormalizer] = {
    SHIPROCKET_PROVIDER: normalize_shiprocket_webhook,
}


def _verify(provider: Any, request: WebhookRequest) -> bool:
    if not provider.capabilities.supports_webhooks:
        return False
    if not isinstance(provider, WebhookVerifyingProvider):
        return False
    return provider.verify_webhook(request)


async def process_carrier_webhook(
    provider_id: str,
    request: WebhookRequest,
    *,
    router: ProviderRouter,
    repository: SQLAlchemyShipmentRepository,
    allow_unsigned_webhooks: bool = False,
    correlation_id: str | None = None,
) -> WebhookResponse:
    """Verify, normalize and reconcile one webhook delivery.

    Unverifiable deliveries raise ``SIGNATURE_INVALID`` unless
    ``allow_unsigned_webhooks`` is set, in which case they are accepted
    and tagged as degraded in the stored payload.
    """
    correlation_id = correlation_id or get_correlation_id() or ""
    provider_key = provider_id.strip().lower()
    provider = router.get_provider(provider_key)

    security_mode = SECURITY_MODE_VERIFIED
    if not _verify(provider, request):
        if not allow_unsigned_webhooks:
            logger.warning(
                "%s provider=%s reason=signature_invalid",
                WEBHOOK_FAILED_EVENT,
                provider_key,
                extra={"correlation_id": correlation_id},
            )
            raise ShippingProviderError(
                ProviderErrorCode.SIGNATURE_INVALID,
                "Webhook verification failed.",
                details={"provider": provider_key},
                correlation_id=correlation_id,
            )
        security_mode = SECURITY_MODE_OVERRIDE
        logger.warning(
            "%s provider=%s reason=%s",
            WEBHOOK_DEGRADED_EVENT,
            provider_key,
            SECURITY_REASON_OVERRIDE,
            extra={"correlation_id": correlation_id},
        )

    normalizer = WEBHOOK_NORMALIZERS.get(
        provider.provider, normalize_generic_webhook
    )
    event = normalizer(request.body or {}, request.raw_body)

    payload = dict(event.payload)
    if security_mode == SECURITY_MODE_OVERRIDE:
        payload.update(
            webhook_security="degraded",
            security_mode=security_mode,
            security_reason=SECURITY_REASON_OVERRIDE,
        )

    try:
        result = await repository.process_shipping_webhook_event(
            provider=provider.provider,
            provider_event_id=event.provider_event_id,
            event_type=event.event_type,
            provider_shipment_id=event.provider_shipment_id,
            provider_awb=event.provider_awb,
            provider_order_id=event.provider_order_id,
            internal_reference=event.internal_reference,
            status=event.status,
            payload_sanitized=payload,
        )
    except Exception:
        logger.exception(
            "%s provider=%s event_id=%s",
            WEBHOOK_FAILED_EVENT,
            provider_key,
            event.provider_event_id,
        )
        raise

    logger.info(
        "%s provider=%s event_id=%s matched=%s deduped=%s buffered=%s",
        WEBHOOK_RECEIVED_EVENT,
        provider_key,
        event.provider_event_id,
        result["matched"],
        result["deduped"],
        result["buffered"],
        extra={"correlation_id": correlation_id},
    )
    return WebhookResponse(
        provider=provider.provider,
        event_id=event.provider_event_id,
        event_type=event.event_type,
        security_mode=security_mode,
        correlation_id=correlation_id,
        **result,
    )
