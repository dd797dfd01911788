"""Exception mapping and handler tests."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from fastapi_carrierlink.exceptions import (
    PROVIDER_ERROR_CODES,
    ProviderErrorCode,
    ShipmentLabelError,
    ShippingPersistenceError,
    ShippingProviderError,
    persistence_http_status,
    register_exception_handlers,
)


def test_error_codes_cover_taxonomy() -> None:
    assert PROVIDER_ERROR_CODES == {
        "AUTH_FAILED",
        "SERVICEABILITY_FAILED",
        "RATE_LIMITED",
        "UPSTREAM_ERROR",
        "INVALID_ADDRESS",
        "SHIPMENT_NOT_FOUND",
        "BOOKING_DISABLED",
        "CANNOT_CANCEL_IN_STATE",
        "NOT_SUPPORTED",
        "SIGNATURE_INVALID",
        "PROVIDER_UNAVAILABLE",
    }


def test_provider_error_envelope() -> None:
    error = ShippingProviderError(
        "RATE_LIMITED",
        "Slow down",
        details={"provider": "shiprocket"},
        correlation_id="corr-1",
    )

    assert error.code is ProviderErrorCode.RATE_LIMITED
    assert error.to_error_envelope() == {
        "error": {
            "code": "RATE_LIMITED",
            "message": "Slow down",
            "details": {"provider": "shiprocket"},
            "correlation_id": "corr-1",
        }
    }


@pytest.mark.parametrize(
    ("code", "status"),
    [
        (ProviderErrorCode.AUTH_FAILED, 401),
        (ProviderErrorCode.SIGNATURE_INVALID, 401),
        (ProviderErrorCode.RATE_LIMITED, 429),
        (ProviderErrorCode.SERVICEABILITY_FAILED, 400),
        (ProviderErrorCode.PROVIDER_UNAVAILABLE, 503),
        (ProviderErrorCode.UPSTREAM_ERROR, 500),
    ],
)
def test_provider_error_http_status(code, status) -> None:
    assert ShippingProviderError(code, "x").http_status == status


def test_unknown_provider_code_is_rejected() -> None:
    with pytest.raises(ValueError):
        ShippingProviderError("NOT_A_CODE", "x")


@pytest.mark.parametrize(
    ("code", "status"),
    [
        ("SHIPPING_INTERNAL_REFERENCE_CONFLICT", 409),
        ("SHIPPING_ACTIVE_SHIPMENT_CONFLICT", 409),
        ("SHIPPING_REBOOK_PREVIOUS_NOT_FOUND", 404),
        ("SHIPPING_SHIPMENT_INVALID_INPUT", 400),
        ("SHIPPING_SOMETHING_ELSE", 500),
    ],
)
def test_persistence_http_status(code, status) -> None:
    error = ShippingPersistenceError(code, "x")
    assert persistence_http_status(error) == status


def _client() -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/provider")
    async def provider_error():
        raise ShippingProviderError(
            ProviderErrorCode.AUTH_FAILED, "bad token", correlation_id="c-1"
        )

    @app.get("/persistence")
    async def persistence_error():
        raise ShippingPersistenceError(
            "SHIPPING_ACTIVE_SHIPMENT_CONFLICT",
            "already booked",
            details={"order_id": "ord_1"},
        )

    @app.get("/label")
    async def label_error():
        raise ShipmentLabelError("SHIPMENT_NOT_FOUND", "missing", 404)

    return TestClient(app)


def test_handlers_render_error_envelopes() -> None:
    client = _client()

    response = client.get("/provider")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_FAILED"
    assert response.json()["error"]["correlation_id"] == "c-1"

    response = client.get("/persistence")
    assert response.status_code == 409
    assert response.json() == {
        "error": {
            "code": "SHIPPING_ACTIVE_SHIPMENT_CONFLICT",
            "message": "already booked",
            "details": {"order_id": "ord_1"},
        }
    }

    response = client.get("/label")
    assert response.status_code == 404
    assert response.json() == {
        "error": {"code": "SHIPMENT_NOT_FOUND", "message": "missing"}
    }
