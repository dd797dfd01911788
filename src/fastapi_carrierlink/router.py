"""Router factory for fastapi-carrierlink."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI

from fastapi_carrierlink.config import (
    CarrierLinkConfig,
    validate_provider_config,
)
from fastapi_carrierlink.contrib.sqlalchemy.repository import (
    SQLAlchemyShipmentRepository,
)
from fastapi_carrierlink.exceptions import register_exception_handlers
from fastapi_carrierlink.provider_router import ProviderRouter
from fastapi_carrierlink.registry import ProviderRegistry
from fastapi_carrierlink.routes.shipments import router as shipments_router
from fastapi_carrierlink.routes.webhooks import router as webhooks_router


def create_carrier_router(
    *,
    config: CarrierLinkConfig,
    repository: SQLAlchemyShipmentRepository,
    registry: ProviderRegistry | None = None,
    provider_router: ProviderRouter | None = None,
) -> APIRouter:
    """Create a configured API router.

    Raises ProviderConfigError when the default provider is misconfigured.
    """
    validate_provider_config(config)
    actual_registry = registry or ProviderRegistry()
    actual_provider_router = provider_router or ProviderRouter.from_config(
        config, actual_registry, repository
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        app.state.carrierlink_config = config
        app.state.carrierlink_repository = repository
        app.state.carrierlink_registry = actual_registry
        app.state.carrierlink_router = actual_provider_router
        register_exception_handlers(app)
        yield
        for provider in actual_registry.providers():
            aclose = getattr(provider, "aclose", None)
            if aclose is not None:
                await aclose()

    router = APIRouter(lifespan=lifespan)
    router.include_router(shipments_router)
    router.include_router(webhooks_router)
    return router
