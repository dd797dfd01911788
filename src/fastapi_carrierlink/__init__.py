"""FastAPI carrier integration public API."""

from typing import TYPE_CHECKING

__version__ = "0.1.0"

__all__ = [
    "CarrierLinkConfig",
    "FakeProvider",
    "ProviderErrorCode",
    "ProviderRegistry",
    "ProviderRouter",
    "ShiprocketProvider",
    "ShippingProvider",
    "ShippingProviderError",
    "__version__",
    "book_shipment",
    "create_carrier_router",
    "process_carrier_webhook",
    "register_exception_handlers",
    "resolve_shipment_label",
    "run_booking_recovery",
    "run_payload_purge",
    "run_webhook_replay",
]

if TYPE_CHECKING:
    from fastapi_carrierlink.booking import book_shipment
    from fastapi_carrierlink.carriers.fake import FakeProvider
    from fastapi_carrierlink.carriers.shiprocket import ShiprocketProvider
    from fastapi_carrierlink.config import CarrierLinkConfig
    from fastapi_carrierlink.exceptions import (
        ProviderErrorCode,
        ShippingProviderError,
        register_exception_handlers,
    )
    from fastapi_carrierlink.jobs import (
        run_booking_recovery,
        run_payload_purge,
        run_webhook_replay,
    )
    from fastapi_carrierlink.labels import resolve_shipment_label
    from fastapi_carrierlink.protocols import ShippingProvider
    from fastapi_carrierlink.provider_router import ProviderRouter
    from fastapi_carrierlink.registry import ProviderRegistry
    from fastapi_carrierlink.router import create_carrier_router
    from fastapi_carrierlink.webhooks import process_carrier_webhook


def __getattr__(name: str):
    # Lazy imports to avoid loading all submodules on package import.
    if name == "CarrierLinkConfig":
        from fastapi_carrierlink.config import CarrierLinkConfig

        return CarrierLinkConfig
    if name == "create_carrier_router":
        from fastapi_carrierlink.router import create_carrier_router

        return create_carrier_router
    if name == "ProviderRegistry":
        from fastapi_carrierlink.registry import ProviderRegistry

        return ProviderRegistry
    if name == "ProviderRouter":
        from fastapi_carrierlink.provider_router import ProviderRouter

        return ProviderRouter
    if name in (
        "ProviderErrorCode",
        "ShippingProviderError",
        "register_exception_handlers",
    ):
        from fastapi_carrierlink import exceptions

        return getattr(exceptions, name)
    if name == "ShippingProvider":
        from fastapi_carrierlink import protocols

        return getattr(protocols, name)
    if name == "ShiprocketProvider":
        from fastapi_carrierlink.carriers.shiprocket import ShiprocketProvider

        return ShiprocketProvider
    if name == "FakeProvider":
        from fastapi_carrierlink.carriers.fake import FakeProvider

        return FakeProvider
    if name == "book_shipment":
        from fastapi_carrierlink.booking import book_shipment

        return book_shipment
    if name == "resolve_shipment_label":
        from fastapi_carrierlink.labels import resolve_shipment_label

        return resolve_shipment_label
    if name == "process_carrier_webhook":
        from fastapi_carrierlink.webhooks import process_carrier_webhook

        return process_carrier_webhook
    if name in (
        "run_booking_recovery",
        "run_payload_purge",
        "run_webhook_replay",
    ):
        from fastapi_carrierlink import jobs

        return getattr(jobs, name)
    raise AttributeError(
        f"module 'fastapi_carrierlink' has no attribute {name!r}"
    )
