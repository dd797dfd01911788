"""Shared fixtures for fastapi-carrierlink tests."""

from __future__ import annotations

from typing import Any

import pytest

ADDRESS = {
    "name": "Asha Rao",
    "phone": "9876543210",
    "email": "asha@example.com",
    "line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "postal_code": "560001",
    "country_code": "IN",
}


def address(**overrides: Any) -> dict[str, Any]:
    return {**ADDRESS, **overrides}


def parcel(**overrides: Any) -> dict[str, Any]:
    return {
        "weight_grams": 1200,
        "dimensions_cm": {"l": 20, "w": 15, "h": 10},
        **overrides,
    }


def quote_request(**overrides: Any) -> dict[str, Any]:
    return {
        "currency_code": "INR",
        "pickup_address": address(postal_code="110001"),
        "delivery_address": address(),
        "parcels": [parcel()],
        **overrides,
    }


def create_shipment_request(
    reference: str = "ord_1-1", **overrides: Any
) -> dict[str, Any]:
    return {
        "internal_reference": reference,
        "idempotency_key": reference,
        "order_reference": "ord_1",
        "currency_code": "INR",
        "pickup_address": address(postal_code="110001"),
        "delivery_address": address(),
        "parcels": [parcel()],
        "line_items": [
            {"sku": "SKU-1", "name": "Tea", "qty": 2, "unit_price": 250}
        ],
        **overrides,
    }


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
async def async_engine():
    """Create an in-memory aiosqlite async engine."""
    from sqlalchemy.ext.asyncio import create_async_engine

    from fastapi_carrierlink.contrib.sqlalchemy.models import Base

    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
async def async_session_factory(async_engine):
    """Create an async session factory bound to the in-memory engine."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    factory = async_sessionmaker(
        async_engine, class_=AsyncSession, expire_on_commit=False
    )
    yield factory


@pytest.fixture()
def sqlalchemy_repository(async_session_factory):
    """Create an SQLAlchemyShipmentRepository."""
    from fastapi_carrierlink.contrib.sqlalchemy.repository import (
        SQLAlchemyShipmentRepository,
    )

    return SQLAlchemyShipmentRepository(async_session_factory)


@pytest.fixture()
def fake_provider():
    from fastapi_carrierlink.carriers.fake import FakeProvider

    return FakeProvider()


@pytest.fixture()
def registry(fake_provider):
    from fastapi_carrierlink.registry import ProviderRegistry

    registry = ProviderRegistry()
    registry.register(fake_provider)
    return registry


@pytest.fixture()
def provider_router(registry, sqlalchemy_repository, sleep):
    from fastapi_carrierlink.provider_router import ProviderRouter

    return ProviderRouter(
        registry, repository=sqlalchemy_repository, sleep=sleep
    )
