"""Tests for shipment booking orchestration."""

from __future__ import annotations

import pytest

from conftest import create_shipment_request
from fastapi_carrierlink.booking import book_shipment
from fastapi_carrierlink.carriers.fake import (
    FakeProvider,
    fake_shipment_id,
    fake_tracking_number,
)
from fastapi_carrierlink.exceptions import (
    ProviderErrorCode,
    ShippingProviderError,
)
from fastapi_carrierlink.provider_router import ProviderRouter
from fastapi_carrierlink.registry import ProviderRegistry
from fastapi_carrierlink.schemas import ShipmentLabelStatus, ShipmentStatus


class RejectingProvider(FakeProvider):
    async def create_shipment(self, request):
        raise ShippingProviderError(
            ProviderErrorCode.INVALID_ADDRESS, "Invalid address supplied"
        )


async def test_book_shipment_persists_provider_refs(
    provider_router, sqlalchemy_repository
) -> None:
    shipment = await book_shipment(
        router=provider_router,
        repository=sqlalchemy_repository,
        order_id="ord_1",
        request=create_shipment_request(),
        service_level="standard",
    )

    assert shipment.status == ShipmentStatus.BOOKED
    assert shipment.provider == "fake"
    assert shipment.provider_shipment_id == fake_shipment_id("ord_1-1")
    assert shipment.provider_awb == fake_tracking_number("ord_1-1")
    assert shipment.provider_order_id == "ord_1-1"
    assert shipment.service_level == "standard"
    assert shipment.label_status == ShipmentLabelStatus.AVAILABLE
    assert shipment.label_url.endswith(".pdf")


async def test_book_shipment_returns_existing_active_shipment(
    provider_router, sqlalchemy_repository
) -> None:
    first = await book_shipment(
        router=provider_router,
        repository=sqlalchemy_repository,
        order_id="ord_1",
        request=create_shipment_request(),
    )
    second = await book_shipment(
        router=provider_router,
        repository=sqlalchemy_repository,
        order_id="ord_1",
        request=create_shipment_request("ord_1-2"),
    )

    assert second.id == first.id
    assert (
        await sqlalchemy_repository.get_shipment_by_internal_reference(
            "ord_1-2"
        )
        is None
    )


async def test_book_shipment_disabled_returns_none(
    registry, sqlalchemy_repository
) -> None:
    router = ProviderRouter(
        registry, repository=sqlalchemy_repository, booking_enabled=False
    )

    result = await book_shipment(
        router=router,
        repository=sqlalchemy_repository,
        order_id="ord_1",
        request=create_shipment_request(),
    )

    assert result is None
    assert await sqlalchemy_repository.list_active_shipments("ord_1") == []


async def test_provider_failure_leaves_booking_in_progress(
    sqlalchemy_repository, sleep
) -> None:
    router = ProviderRouter(
        ProviderRegistry({"fake": RejectingProvider()}),
        repository=sqlalchemy_repository,
        sleep=sleep,
    )

    with pytest.raises(ShippingProviderError) as exc_info:
        await book_shipment(
            router=router,
            repository=sqlalchemy_repository,
            order_id="ord_1",
            request=create_shipment_request(),
        )

    assert exc_info.value.code == ProviderErrorCode.INVALID_ADDRESS
    [shipment] = await sqlalchemy_repository.list_active_shipments("ord_1")
    assert shipment.status == ShipmentStatus.BOOKING_IN_PROGRESS


async def test_booking_replays_early_webhooks(
    provider_router, sqlalchemy_repository
) -> None:
    await sqlalchemy_repository.process_shipping_webhook_event(
        provider="fake",
        provider_event_id="evt_early",
        event_type="in_transit",
        provider_awb=fake_tracking_number("ord_1-1"),
    )

    shipment = await book_shipment(
        router=provider_router,
        repository=sqlalchemy_repository,
        order_id="ord_1",
        request=create_shipment_request(),
    )

    stored = await sqlalchemy_repository.get_shipment_by_id(shipment.id)
    assert stored.status == ShipmentStatus.IN_TRANSIT
    assert await sqlalchemy_repository.webhook_buffer.list_pending() == []
