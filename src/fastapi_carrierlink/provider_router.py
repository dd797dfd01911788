"""Policy router dispatching contract calls to provider adapters."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import httpx

from fastapi_carrierlink.circuit import CircuitBreaker, CircuitKey
from fastapi_carrierlink.config import CarrierLinkConfig
from fastapi_carrierlink.correlation import get_correlation_id
from fastapi_carrierlink.exceptions import (
    PROVIDER_ERROR_CODES,
    ProviderErrorCode,
    ShippingProviderError,
)
from fastapi_carrierlink.observability import log_provider_call
from fastapi_carrierlink.protocols import (
    ReferenceLookupProvider,
    ShipmentStore,
    ShippingProvider,
)
from fastapi_carrierlink.registry import ProviderRegistry
from fastapi_carrierlink.retry import compute_backoff_seconds
from fastapi_carrierlink.schemas import (
    CancelRequest,
    CancelResponse,
    CreateShipmentRequest,
    CreateShipmentResponse,
    GetLabelRequest,
    HealthCheckResponse,
    LabelResponse,
    LookupShipmentByReferenceRequest,
    QuoteRequest,
    QuoteResponse,
    ShipmentStatus,
    TrackingResponse,
    TrackRequest,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_METHODS = frozenset(
    {
        "quote",
        "lookup_shipment_by_reference",
        "track",
        "get_label",
        "health_check",
    }
)

_RETRYABLE_CODES = frozenset(
    {
        ProviderErrorCode.RATE_LIMITED,
        ProviderErrorCode.UPSTREAM_ERROR,
        ProviderErrorCode.PROVIDER_UNAVAILABLE,
    }
)

_NETWORK_ERRORS = (
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
)

_NON_CANCELLABLE_STATUSES = frozenset(
    {ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED}
)


def _error_status(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    if isinstance(exc, ShippingProviderError):
        status = exc.details.get("status")
    else:
        status = getattr(exc, "status_code", None) or getattr(
            exc, "status", None
        )
    return status if isinstance(status, int) else None


def _error_code(exc: BaseException) -> str | None:
    code = getattr(exc, "code", None)
    if code is None:
        return None
    code = str(code).strip().upper()
    return code if code in PROVIDER_ERROR_CODES else None


def map_unknown_error_code(exc: BaseException) -> ProviderErrorCode:
    status = _error_status(exc)
    if status in (401, 403):
        return ProviderErrorCode.AUTH_FAILED
    if status == 429:
        return ProviderErrorCode.RATE_LIMITED
    if status == 404:
        return ProviderErrorCode.SHIPMENT_NOT_FOUND
    if status is not None and status >= 500:
        return ProviderErrorCode.UPSTREAM_ERROR
    if isinstance(exc, _NETWORK_ERRORS):
        return ProviderErrorCode.PROVIDER_UNAVAILABLE
    code = _error_code(exc)
    if code is not None:
        return ProviderErrorCode(code)
    return ProviderErrorCode.UPSTREAM_ERROR


def is_retryable_error(exc: BaseException) -> bool:
    status = _error_status(exc)
    if status is not None and (status == 429 or status >= 500):
        return True
    if isinstance(exc, _NETWORK_ERRORS):
        return True
    code = _error_code(exc)
    return code is not None and ProviderErrorCode(code) in _RETRYABLE_CODES


def to_shipping_provider_error(
    exc: BaseException,
    *,
    provider: str,
    method: str,
    correlation_id: str | None,
) -> ShippingProviderError:
    """Normalize any exception raised by an adapter call."""
    if isinstance(exc, ShippingProviderError):
        if exc.correlation_id is None:
            exc.correlation_id = correlation_id
        return exc
    return ShippingProviderError(
        map_unknown_error_code(exc),
        str(exc) or "Shipping provider call failed.",
        details={
            "provider": provider,
            "method": method,
            "status": _error_status(exc),
        },
        correlation_id=correlation_id,
    )


class ProviderRouter:
    """Routes contract calls through retry and circuit-breaker policy."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        repository: ShipmentStore | None = None,
        default_provider: str | None = None,
        booking_enabled: bool = True,
        max_attempts: int = 3,
        base_delay_seconds: float = 0.2,
        jitter_seconds: float = 0.125,
        breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.default_provider = default_provider
        self.booking_enabled = booking_enabled
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.jitter_seconds = jitter_seconds
        self.breaker = breaker or CircuitBreaker()
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: CarrierLinkConfig,
        registry: ProviderRegistry,
        repository: ShipmentStore | None = None,
    ) -> ProviderRouter:
        return cls(
            registry,
            repository=repository,
            default_provider=config.default_provider,
            booking_enabled=config.booking_enabled,
            max_attempts=config.retry_max_attempts,
            base_delay_seconds=config.retry_base_delay_seconds,
            jitter_seconds=config.retry_jitter_seconds,
            breaker=CircuitBreaker(
                consecutive_failures=config.breaker_consecutive_failures,
                error_rate_percent=config.breaker_error_rate_percent,
                window_size=config.breaker_window_size,
                open_seconds=config.breaker_open_seconds,
            ),
        )

    # Provider resolution

    def get_provider(self, provider_id: str) -> ShippingProvider:
        try:
            return self.registry.get(provider_id)
        except KeyError:
            raise ShippingProviderError(
                ProviderErrorCode.PROVIDER_UNAVAILABLE,
                f"Shipping provider not available: {provider_id}",
                details={"provider": provider_id},
                correlation_id=get_correlation_id(),
            ) from None

    def get_default_provider_id(self) -> str:
        if self.default_provider and self.default_provider.strip():
            provider = self.get_provider(self.default_provider)
            return provider.provider.strip().lower()

        available = self.registry.provider_ids()
        if len(available) == 1:
            return available[0]

        raise ShippingProviderError(
            ProviderErrorCode.PROVIDER_UNAVAILABLE,
            "No default shipping provider configured.",
            details={"available_providers": available},
            correlation_id=get_correlation_id(),
        )

    def resolve_provider_id(self, provider: str | None = None) -> str:
        if provider and provider.strip():
            return provider.strip().lower()
        return self.get_default_provider_id()

    def _resolve(self, provider: str | None) -> ShippingProvider:
        return self.get_provider(self.resolve_provider_id(provider))

    # Policy

    async def invoke_with_policy(
        self,
        provider: ShippingProvider,
        method: str,
        call: Callable[[], Awaitable[T]],
        *,
        retry_allowed: bool,
        correlation_id: str | None = None,
        shipment_id: str | None = None,
        provider_shipment_id: str | None = None,
    ) -> T:
        provider_id = provider.provider.strip().lower()
        key = CircuitKey(provider_id, method)
        started = time.perf_counter()

        def _log(success: bool, error_code: str | None = None) -> None:
            log_provider_call(
                provider=provider_id,
                method=method,
                duration_ms=(time.perf_counter() - started) * 1000,
                success=success,
                error_code=error_code,
                correlation_id=correlation_id,
                shipment_id=shipment_id,
                provider_shipment_id=provider_shipment_id,
            )

        if self.breaker.is_open(key):
            error = ShippingProviderError(
                ProviderErrorCode.PROVIDER_UNAVAILABLE,
                "Provider circuit breaker is open.",
                details={"provider": provider_id, "method": method},
                correlation_id=correlation_id,
            )
            _log(False, error.code)
            raise error

        max_attempts = self.max_attempts if retry_allowed else 1
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await call()
            except Exception as exc:
                if attempt < max_attempts and is_retryable_error(exc):
                    delay = compute_backoff_seconds(
                        attempt, self.base_delay_seconds, self.jitter_seconds
                    )
                    logger.warning(
                        "Provider %s.%s attempt %d failed, retrying: %s",
                        provider_id,
                        method,
                        attempt,
                        exc,
                    )
                    await self._sleep(delay)
                    continue

                error = to_shipping_provider_error(
                    exc,
                    provider=provider_id,
                    method=method,
                    correlation_id=correlation_id,
                )
                self.breaker.record_failure(key)
                _log(False, error.code)
                if error is exc:
                    raise
                raise error from exc

            self.breaker.record_success(key)
            _log(True)
            return result

    # Contract operations

    async def quote(
        self,
        request: QuoteRequest | dict[str, Any],
        provider: str | None = None,
    ) -> QuoteResponse:
        request = QuoteRequest.model_validate(request)
        adapter = self._resolve(provider)
        return await self.invoke_with_policy(
            adapter,
            "quote",
            lambda: adapter.quote(request),
            retry_allowed=True,
            correlation_id=request.correlation_id or get_correlation_id(),
        )

    async def create_shipment(
        self,
        request: CreateShipmentRequest | dict[str, Any],
        provider: str | None = None,
    ) -> CreateShipmentResponse:
        request = CreateShipmentRequest.model_validate(request)
        adapter = self._resolve(provider)
        correlation_id = request.correlation_id or get_correlation_id()

        if not self.booking_enabled:
            log_provider_call(
                provider=adapter.provider,
                method="create_shipment",
                duration_ms=0,
                success=False,
                error_code=ProviderErrorCode.BOOKING_DISABLED,
                correlation_id=correlation_id,
            )
            raise ShippingProviderError(
                ProviderErrorCode.BOOKING_DISABLED,
                "Shipment booking is disabled.",
                details={"provider": adapter.provider},
                correlation_id=correlation_id,
            )

        retry_allowed = adapter.capabilities.supports_idempotency and bool(
            request.internal_reference
        )
        return await self.invoke_with_policy(
            adapter,
            "create_shipment",
            lambda: adapter.create_shipment(request),
            retry_allowed=retry_allowed,
            correlation_id=correlation_id,
        )

    async def lookup_shipment_by_reference(
        self,
        request: LookupShipmentByReferenceRequest | dict[str, Any],
        provider: str | None = None,
    ) -> CreateShipmentResponse | None:
        request = LookupShipmentByReferenceRequest.model_validate(request)
        adapter = self._resolve(provider)
        correlation_id = request.correlation_id or get_correlation_id()

        if not (
            adapter.capabilities.supports_reference_lookup
            and isinstance(adapter, ReferenceLookupProvider)
        ):
            raise ShippingProviderError(
                ProviderErrorCode.NOT_SUPPORTED,
                "Provider does not support lookup by reference.",
                details={"provider": adapter.provider},
                correlation_id=correlation_id,
            )

        return await self.invoke_with_policy(
            adapter,
            "lookup_shipment_by_reference",
            lambda: adapter.find_shipment_by_reference(request),
            retry_allowed=True,
            correlation_id=correlation_id,
        )

    async def get_label(
        self,
        request: GetLabelRequest | dict[str, Any],
        provider: str | None = None,
    ) -> LabelResponse:
        request = GetLabelRequest.model_validate(request)
        adapter = self._resolve(provider)
        return await self.invoke_with_policy(
            adapter,
            "get_label",
            lambda: adapter.get_label(request),
            retry_allowed=True,
            correlation_id=request.correlation_id or get_correlation_id(),
            provider_shipment_id=request.shipment_id,
        )

    async def track(
        self,
        request: TrackRequest | dict[str, Any],
        provider: str | None = None,
    ) -> TrackingResponse:
        """Track by provider identifiers.

        When ``shipment_id`` names a persisted shipment the call is
        resolved from that record instead.
        """
        request = TrackRequest.model_validate(request)
        if request.shipment_id and await self._find_shipment(
            request.shipment_id
        ):
            return await self.track_shipment(
                request.shipment_id,
                tracking_number=request.tracking_number,
                correlation_id=request.correlation_id,
            )

        adapter = self._resolve(provider)
        return await self.invoke_with_policy(
            adapter,
            "track",
            lambda: adapter.track(request),
            retry_allowed=True,
            correlation_id=request.correlation_id or get_correlation_id(),
            provider_shipment_id=request.shipment_id,
        )

    async def health_check(
        self, provider: str | None = None
    ) -> HealthCheckResponse:
        adapter = self._resolve(provider)
        return await self.invoke_with_policy(
            adapter,
            "health_check",
            adapter.health_check,
            retry_allowed=True,
            correlation_id=get_correlation_id(),
        )

    async def health_check_all(self) -> list[HealthCheckResponse]:
        """Check every registered provider; failures become ok=False."""
        results = []
        for adapter in self.registry.providers():
            try:
                results.append(await self.health_check(adapter.provider))
            except ShippingProviderError as exc:
                results.append(
                    HealthCheckResponse(
                        ok=False,
                        provider=adapter.provider,
                        checked_at=datetime.now(tz=UTC),
                        details={"code": exc.code, "message": exc.message},
                    )
                )
        return results

    async def cancel(
        self,
        request: CancelRequest | dict[str, Any],
        provider: str | None = None,
        *,
        idempotent: bool = False,
    ) -> CancelResponse:
        request = CancelRequest.model_validate(request)
        if await self._find_shipment(request.shipment_id):
            return await self.cancel_by_shipment(
                request.shipment_id,
                reason=request.reason,
                correlation_id=request.correlation_id,
                idempotent=idempotent,
            )

        adapter = self._resolve(provider)
        return await self.invoke_with_policy(
            adapter,
            "cancel",
            lambda: adapter.cancel(request),
            retry_allowed=(
                idempotent and adapter.capabilities.supports_idempotency
            ),
            correlation_id=request.correlation_id or get_correlation_id(),
            provider_shipment_id=request.shipment_id,
        )

    # Shipment-scoped operations

    async def _find_shipment(self, shipment_id: str) -> Any | None:
        if self.repository is None:
            return None
        return await self.repository.get_shipment_by_id(shipment_id)

    async def _require_shipment(
        self, shipment_id: str, correlation_id: str | None
    ) -> Any:
        if not shipment_id or not shipment_id.strip():
            raise ShippingProviderError(
                ProviderErrorCode.NOT_SUPPORTED,
                "shipment_id is required.",
                correlation_id=correlation_id,
            )
        if self.repository is None:
            raise ShippingProviderError(
                ProviderErrorCode.PROVIDER_UNAVAILABLE,
                "Shipment repository is not configured.",
                details={"shipment_id": shipment_id},
                correlation_id=correlation_id,
            )
        shipment = await self.repository.get_shipment_by_id(shipment_id)
        if shipment is None:
            raise ShippingProviderError(
                ProviderErrorCode.NOT_SUPPORTED,
                f"Shipment not found: {shipment_id}",
                details={"shipment_id": shipment_id},
                correlation_id=correlation_id,
            )
        return shipment

    async def track_shipment(
        self,
        shipment_id: str,
        *,
        tracking_number: str | None = None,
        correlation_id: str | None = None,
    ) -> TrackingResponse:
        correlation_id = correlation_id or get_correlation_id()
        shipment = await self._require_shipment(shipment_id, correlation_id)
        adapter = self.get_provider(shipment.provider)

        identifiers = {
            "shipment_id": shipment.provider_shipment_id,
            "tracking_number": tracking_number or shipment.provider_awb,
            "internal_reference": shipment.internal_reference,
        }
        if not any(identifiers.values()):
            raise ShippingProviderError(
                ProviderErrorCode.NOT_SUPPORTED,
                "Shipment has no provider identifiers to track.",
                details={"shipment_id": shipment.id},
                correlation_id=correlation_id,
            )
        request = TrackRequest(correlation_id=correlation_id, **identifiers)

        return await self.invoke_with_policy(
            adapter,
            "track",
            lambda: adapter.track(request),
            retry_allowed=True,
            correlation_id=correlation_id,
            shipment_id=shipment.id,
            provider_shipment_id=shipment.provider_shipment_id,
        )

    async def cancel_by_shipment(
        self,
        shipment_id: str,
        *,
        reason: str | None = None,
        correlation_id: str | None = None,
        idempotent: bool = False,
    ) -> CancelResponse:
        correlation_id = correlation_id or get_correlation_id()
        shipment = await self._require_shipment(shipment_id, correlation_id)
        status = ShipmentStatus(shipment.status)

        if status == ShipmentStatus.CANCELLED:
            return CancelResponse(
                shipment_id=shipment.id,
                cancelled=True,
                status=ShipmentStatus.CANCELLED,
            )
        if status in _NON_CANCELLABLE_STATUSES:
            raise ShippingProviderError(
                ProviderErrorCode.CANNOT_CANCEL_IN_STATE,
                f"Shipment cannot be cancelled in status {status}.",
                details={
                    "shipment_id": shipment.id,
                    "provider": shipment.provider,
                    "status": status.value,
                },
                correlation_id=correlation_id,
            )

        provider_reference = (
            shipment.provider_shipment_id or shipment.provider_awb
        )
        if not provider_reference:
            raise ShippingProviderError(
                ProviderErrorCode.NOT_SUPPORTED,
                "Shipment has no provider reference to cancel.",
                details={"shipment_id": shipment.id},
                correlation_id=correlation_id,
            )

        adapter = self.get_provider(shipment.provider)
        request = CancelRequest(
            shipment_id=provider_reference,
            reason=reason,
            correlation_id=correlation_id,
        )
        response = await self.invoke_with_policy(
            adapter,
            "cancel",
            lambda: adapter.cancel(request),
            retry_allowed=(
                idempotent and adapter.capabilities.supports_idempotency
            ),
            correlation_id=correlation_id,
            shipment_id=shipment.id,
            provider_shipment_id=shipment.provider_shipment_id,
        )

        if response.cancelled and self.repository is not None:
            await self.repository.update_shipment_status_monotonic(
                shipment.id, ShipmentStatus.CANCELLED
            )
        return response
