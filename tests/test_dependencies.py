"""Dependency injection tests."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

from fastapi_carrierlink.config import CarrierLinkConfig
from fastapi_carrierlink.dependencies import (
    get_config,
    get_provider_router,
    get_registry,
    get_repository,
)


def _make_request(**state_attrs):
    """Create a mock request with app.state attributes."""
    request = MagicMock()
    request.app.state = SimpleNamespace(**state_attrs)
    return request


class TestDependencies:
    def test_get_config_from_app_state(self) -> None:
        config = CarrierLinkConfig(default_provider="fake")
        request = _make_request(carrierlink_config=config)
        assert get_config(request) is config

    def test_get_repository_from_app_state(self) -> None:
        repo = MagicMock()
        request = _make_request(carrierlink_repository=repo)
        assert get_repository(request) is repo

    def test_get_registry_and_router_from_app_state(self) -> None:
        registry = MagicMock()
        router = MagicMock()
        request = _make_request(
            carrierlink_registry=registry,
            carrierlink_router=router,
        )
        assert get_registry(request) is registry
        assert get_provider_router(request) is router
