"""Carrier webhook endpoint."""

from __future__ import annotations

import logging
from json import JSONDecodeError

from fastapi import APIRouter, Depends, Request

from fastapi_carrierlink.config import CarrierLinkConfig
from fastapi_carrierlink.correlation import resolve_correlation_id
from fastapi_carrierlink.dependencies import (
    get_config,
    get_provider_router,
    get_repository,
)
from fastapi_carrierlink.schemas import WebhookRequest, WebhookResponse
from fastapi_carrierlink.webhooks import process_carrier_webhook

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/webhooks/shipping/{provider}",
    response_model=WebhookResponse,
)
async def carrier_webhook(
    provider: str,
    request: Request,
    config: CarrierLinkConfig = Depends(get_config),
    provider_router=Depends(get_provider_router),
    repository=Depends(get_repository),
    correlation_id: str = Depends(resolve_correlation_id),
) -> WebhookResponse:
    """Verify and reconcile a carrier status webhook."""
    raw_body = await request.body()
    try:
        body = await request.json()
    except (JSONDecodeError, UnicodeDecodeError):
        logger.warning("Webhook for %s has a non-JSON body", provider)
        body = {}

    return await process_carrier_webhook(
        provider,
        WebhookRequest(
            headers=dict(request.headers),
            raw_body=raw_body,
            body=body if isinstance(body, dict) else {},
        ),
        router=provider_router,
        repository=repository,
        allow_unsigned_webhooks=config.allow_unsigned_webhooks,
        correlation_id=correlation_id,
    )
