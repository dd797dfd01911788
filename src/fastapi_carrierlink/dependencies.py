"""Dependency providers for request handlers."""

from __future__ import annotations

from fastapi import Request

from fastapi_carrierlink.config import CarrierLinkConfig
from fastapi_carrierlink.contrib.sqlalchemy.repository import (
    SQLAlchemyShipmentRepository,
)
from fastapi_carrierlink.provider_router import ProviderRouter
from fastapi_carrierlink.registry import ProviderRegistry


def get_config(request: Request) -> CarrierLinkConfig:
    """Read config from FastAPI app state."""
    return request.app.state.carrierlink_config


def get_repository(request: Request) -> SQLAlchemyShipmentRepository:
    """Read shipment repository from FastAPI app state."""
    return request.app.state.carrierlink_repository


def get_registry(request: Request) -> ProviderRegistry:
    """Read provider registry from FastAPI app state."""
    return request.app.state.carrierlink_registry


def get_provider_router(request: Request) -> ProviderRouter:
    """Read the policy router shared by all requests."""
    return request.app.state.carrierlink_router
