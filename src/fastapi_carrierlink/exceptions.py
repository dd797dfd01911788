"""Carrier error taxonomy and FastAPI exception handlers."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class ProviderErrorCode(StrEnum):
    """Normalized provider failure codes."""

    AUTH_FAILED = "AUTH_FAILED"
    SERVICEABILITY_FAILED = "SERVICEABILITY_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    SHIPMENT_NOT_FOUND = "SHIPMENT_NOT_FOUND"
    BOOKING_DISABLED = "BOOKING_DISABLED"
    CANNOT_CANCEL_IN_STATE = "CANNOT_CANCEL_IN_STATE"
    NOT_SUPPORTED = "NOT_SUPPORTED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"


PROVIDER_ERROR_CODES = frozenset(code.value for code in ProviderErrorCode)

_HTTP_STATUS_BY_CODE = {
    ProviderErrorCode.AUTH_FAILED: 401,
    ProviderErrorCode.SIGNATURE_INVALID: 401,
    ProviderErrorCode.RATE_LIMITED: 429,
    ProviderErrorCode.SERVICEABILITY_FAILED: 400,
    ProviderErrorCode.INVALID_ADDRESS: 400,
    ProviderErrorCode.NOT_SUPPORTED: 400,
    ProviderErrorCode.BOOKING_DISABLED: 503,
    ProviderErrorCode.PROVIDER_UNAVAILABLE: 503,
}


class ShippingProviderError(Exception):
    """Failure raised by a provider adapter or the provider router."""

    def __init__(
        self,
        code: ProviderErrorCode | str,
        message: str,
        details: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = ProviderErrorCode(code)
        self.message = message
        self.details = dict(details or {})
        self.correlation_id = correlation_id

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS_BY_CODE.get(self.code, 500)

    def to_error_object(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "correlation_id": self.correlation_id,
        }

    def to_error_envelope(self) -> dict[str, Any]:
        return {"error": self.to_error_object()}


class ShippingPersistenceError(Exception):
    """Failure raised by the shipment store."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = dict(details or {})


class ProviderConfigError(Exception):
    """Raised at startup when a selected provider is misconfigured."""

    def __init__(
        self,
        message: str,
        code: str = "PROVIDER_CONFIG_MISSING",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = dict(details or {})


class ShipmentLabelError(Exception):
    """Label lookup failure carrying its own HTTP status."""

    def __init__(self, code: str, message: str, http_status: int) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status


_CONFLICT_CODES = frozenset(
    {
        "SHIPPING_INTERNAL_REFERENCE_CONFLICT",
        "SHIPPING_ACTIVE_SHIPMENT_CONFLICT",
        "SHIPPING_EVENT_DUPLICATE",
    }
)


def persistence_http_status(exc: ShippingPersistenceError) -> int:
    if exc.code in _CONFLICT_CODES:
        return 409
    if exc.code.endswith("_NOT_FOUND"):
        return 404
    if exc.code.endswith("_INVALID_INPUT"):
        return 400
    return 500


def register_exception_handlers(app: FastAPI) -> None:
    """Register carrier exception handlers on a FastAPI app.

    Handler order:
    1. ShippingProviderError → 401/429/400/503/500 by code
    2. ShippingPersistenceError → 409 for conflicts
    3. ShipmentLabelError → its own status
    """

    @app.exception_handler(ShippingProviderError)
    async def _provider_error(
        request: Request,
        exc: ShippingProviderError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.http_status,
            content=exc.to_error_envelope(),
        )

    @app.exception_handler(ShippingPersistenceError)
    async def _persistence_error(
        request: Request,
        exc: ShippingPersistenceError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=persistence_http_status(exc),
            content={
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "details": exc.details,
                }
            },
        )

    @app.exception_handler(ShipmentLabelError)
    async def _label_error(
        request: Request,
        exc: ShipmentLabelError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": {"code": exc.code, "message": exc.message}},
        )
