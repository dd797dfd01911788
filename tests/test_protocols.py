"""Protocol conformance tests."""

from fastapi_carrierlink.carriers.fake import FakeProvider
from fastapi_carrierlink.carriers.shiprocket import ShiprocketProvider
from fastapi_carrierlink.protocols import (
    ReferenceLookupProvider,
    ShipmentStore,
    ShippingProvider,
    WebhookVerifyingProvider,
)


class _PartialProvider:
    provider = "partial"

    async def quote(self, request):
        return None


def test_adapters_satisfy_provider_protocol() -> None:
    for provider in (FakeProvider(), ShiprocketProvider()):
        assert isinstance(provider, ShippingProvider)
        assert isinstance(provider, ReferenceLookupProvider)


def test_only_shiprocket_verifies_webhooks() -> None:
    assert isinstance(ShiprocketProvider(), WebhookVerifyingProvider)
    assert not isinstance(FakeProvider(), WebhookVerifyingProvider)


def test_partial_provider_is_rejected() -> None:
    assert not isinstance(_PartialProvider(), ShippingProvider)


def test_sqlalchemy_repository_is_a_shipment_store(
    sqlalchemy_repository,
) -> None:
    assert isinstance(sqlalchemy_repository, ShipmentStore)
