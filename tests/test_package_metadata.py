"""Package metadata tests."""

import re
from pathlib import Path

import pytest


def test_version_is_semver() -> None:
    from fastapi_carrierlink import __version__

    assert __version__ == "0.1.0"
    assert re.match(r"^\d+\.\d+\.\d+", __version__)


def test_py_typed_marker_exists() -> None:
    marker = (
        Path(__file__).resolve().parents[1]
        / "src"
        / "fastapi_carrierlink"
        / "py.typed"
    )
    assert marker.exists(), "py.typed marker file must exist"


def test_all_exports_importable() -> None:
    import fastapi_carrierlink

    expected = {
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
    }
    assert set(fastapi_carrierlink.__all__) == expected

    for name in expected:
        obj = getattr(fastapi_carrierlink, name)
        assert obj is not None, f"{name} resolved to None"


def test_getattr_raises_for_unknown_attribute() -> None:
    import fastapi_carrierlink

    with pytest.raises(AttributeError, match="no_such_thing"):
        fastapi_carrierlink.no_such_thing  # noqa: B018
