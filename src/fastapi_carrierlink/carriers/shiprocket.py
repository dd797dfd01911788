"""Shiprocket carrier adapter."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote as url_quote

import httpx

from fastapi_carrierlink.carriers.shiprocket_mapping import (
    DEFAULT_SIGNATURE_HEADER,
    FALLBACK_SIGNATURE_HEADERS,
    SHIPROCKET_PROVIDER,
    WEBHOOK_TOKEN_HEADER,
    as_mapping,
    compute_signature,
    constant_time_equal,
    extract_error_message,
    first_non_empty,
    is_already_cancelled_message,
    is_cancel_success_message,
    is_not_cancellable_message,
    map_shiprocket_error_code,
    map_shiprocket_status,
    map_shiprocket_status_id,
    normalize_signature,
    parse_ip_allowlist,
    read_header,
    read_text,
    source_ip,
)
from fastapi_carrierlink.config import ShiprocketSettings
from fastapi_carrierlink.correlation import get_correlation_id
from fastapi_carrierlink.exceptions import (
    ProviderErrorCode,
    ShippingProviderError,
)
from fastapi_carrierlink.observability import log_provider_call
from fastapi_carrierlink.retry import compute_backoff_ms
from fastapi_carrierlink.sanitize import sanitize_provider_payload
from fastapi_carrierlink.schemas import (
    CancelRequest,
    CancelResponse,
    CreateShipmentRequest,
    CreateShipmentResponse,
    GetLabelRequest,
    HealthCheckResponse,
    LabelResponse,
    LookupShipmentByReferenceRequest,
    ProviderCapabilities,
    QuoteOption,
    QuoteRequest,
    QuoteResponse,
    ShipmentStatus,
    TrackingEvent,
    TrackingResponse,
    TrackRequest,
    WebhookRequest,
)

logger = logging.getLogger(__name__)

AUTH_LOGIN_PATH = "/v1/external/auth/login"
GENERATE_LABEL_PATH = "/v1/external/courier/generate/label"
CANCEL_PATH = "/v1/external/orders/cancel"
TRACK_AWB_PATH = "/v1/external/courier/track/awb/{awb}"
TRACK_SHIPMENT_PATH = "/v1/external/courier/track/shipment/{shipment_id}"
TRACKING_URL = "https://shiprocket.co/tracking/{awb}"

MIN_TOKEN_LIFETIME = timedelta(seconds=60)

RETRYABLE_OPERATIONS = frozenset(
    {
        "auth/login",
        "serviceability",
        "rate-calculator",
        "track",
        "getLabel",
        "lookup-by-reference",
        "healthCheck",
    }
)

_RATE_LIST_KEYS = (
    "rate_options",
    "rates",
    "available_courier_companies",
    "courier_data",
)


def _normalize_base_url(base_url: str) -> str:
    base = base_url.strip().rstrip("/")
    if base.endswith("/v1/external"):
        base = base[: -len("/v1/external")]
    return base


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _parse_datetime(value: Any) -> datetime | None:
    text = read_text(value)
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _grams_to_kg(grams: float) -> float:
    return round(grams / 1000, 3)


class ShiprocketProvider:
    """Shiprocket adapter implementing the shipping provider contract.

    Auth tokens are cached until ``token_refresh_skew_minutes`` before
    expiry and refreshed single-flight: concurrent callers share one
    login request. A configured static token skips login entirely.
    """

    provider = SHIPROCKET_PROVIDER
    capabilities = ProviderCapabilities(
        supports_cod=True,
        supports_reverse=False,
        supports_label_regen=True,
        supports_webhooks=True,
        supports_cancel=True,
        supports_multi_piece=True,
        supports_idempotency=True,
        supports_reference_lookup=True,
    )

    def __init__(
        self,
        settings: ShiprocketSettings | None = None,
        *,
        booking_enabled: bool = True,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or ShiprocketSettings()
        self.booking_enabled = booking_enabled
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=_normalize_base_url(self.settings.base_url),
            timeout=self.settings.timeout_seconds,
        )
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._token: str | None = None
        self._token_expires_at: datetime | None = None
        self._refresh_in_flight: asyncio.Task[str] | None = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _correlation_id(self, correlation_id: str | None = None) -> str:
        return (
            correlation_id
            or get_correlation_id()
            or f"shiprocket_{int(time.time() * 1000)}"
        )

    # Auth

    async def get_auth_token(
        self,
        *,
        force_refresh: bool = False,
        correlation_id: str | None = None,
    ) -> str:
        if self.settings.token:
            return self.settings.token

        skew = timedelta(minutes=self.settings.token_refresh_skew_minutes)
        if (
            not force_refresh
            and self._token
            and self._token_expires_at is not None
            and self._clock() < self._token_expires_at - skew
        ):
            return self._token

        if self._refresh_in_flight is None:
            self._refresh_in_flight = asyncio.ensure_future(
                self._refresh_and_release(self._correlation_id(correlation_id))
            )
        return await asyncio.shield(self._refresh_in_flight)

    async def _refresh_and_release(self, correlation_id: str) -> str:
        try:
            return await self._refresh_auth_token(correlation_id)
        finally:
            self._refresh_in_flight = None

    async def _refresh_auth_token(self, correlation_id: str) -> str:
        if not (self.settings.email and self.settings.password):
            raise ShippingProviderError(
                ProviderErrorCode.AUTH_FAILED,
                "Shiprocket credentials are missing.",
                details={"provider": self.provider},
                correlation_id=correlation_id,
            )

        body = await self._request(
            "POST",
            AUTH_LOGIN_PATH,
            operation="auth/login",
            json={
                "email": self.settings.email,
                "password": self.settings.password,
            },
            attach_auth=False,
            retryable=True,
            allow_401_refresh=False,
            correlation_id=correlation_id,
        )
        data = as_mapping(body.get("data"))
        token = first_non_empty(data.get("token"), body.get("token"))
        if not token:
            raise self._to_api_error(
                200,
                body,
                "Shiprocket login response did not include a token.",
                correlation_id,
            )

        self._token = token
        self._token_expires_at = self._token_expiry(body)
        logger.info(
            "Shiprocket token refreshed, expires at %s",
            self._token_expires_at.isoformat(),
        )
        return token

    def _token_expiry(self, body: dict[str, Any]) -> datetime:
        now = self._clock()
        data = as_mapping(body.get("data"))
        expires_at = None
        for candidate in (
            data.get("token_expires_at"),
            data.get("expires_at"),
            body.get("token_expires_at"),
            body.get("expires_at"),
        ):
            expires_at = _parse_datetime(candidate)
            if expires_at is not None:
                break

        if expires_at is None:
            expires_in = _to_number(
                data.get("expires_in") or body.get("expires_in")
            )
            if expires_in > 0:
                expires_at = now + timedelta(seconds=expires_in)

        if expires_at is None:
            hours = max(1.0, self.settings.token_ttl_hours - 1)
            expires_at = now + timedelta(hours=hours)

        return max(expires_at, now + MIN_TOKEN_LIFETIME)

    # HTTP

    async def _backoff(self, attempt: int) -> None:
        delay_ms = compute_backoff_ms(
            attempt,
            self.settings.retry_base_delay_ms,
            self.settings.retry_jitter_ms,
        )
        await self._sleep(delay_ms / 1000)

    def _to_api_error(
        self,
        status: int | None,
        body: dict[str, Any],
        fallback: str,
        correlation_id: str,
    ) -> ShippingProviderError:
        message = extract_error_message(body, fallback)
        return ShippingProviderError(
            map_shiprocket_error_code(status, message),
            message,
            details={
                "provider": self.provider,
                "status": status,
                "upstream": sanitize_provider_payload(self.provider, body)
                or {"provider": self.provider},
            },
            correlation_id=correlation_id,
        )

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict[str, Any]:
        try:
            parsed = response.json()
        except ValueError:
            return {"message": response.text}
        if isinstance(parsed, dict):
            return parsed
        return {"data": parsed}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        attach_auth: bool = True,
        retryable: bool | None = None,
        allow_401_refresh: bool = True,
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        correlation_id = self._correlation_id(correlation_id)
        if retryable is None:
            retryable = operation in RETRYABLE_OPERATIONS
        max_attempts = self.settings.retry_max_attempts if retryable else 1
        if operation == "auth/login":
            log_method = operation
        else:
            log_method = f"request/{operation}"

        attempt = 0
        refreshed = False
        force_refresh = False
        started = time.perf_counter()

        def _log(success: bool, error_code: str | None = None) -> None:
            log_provider_call(
                provider=self.provider,
                method=log_method,
                duration_ms=(time.perf_counter() - started) * 1000,
                success=success,
                error_code=error_code,
                correlation_id=correlation_id,
            )

        while True:
            attempt += 1
            headers = {
                "Accept": "application/json",
                "x-correlation-id": correlation_id,
            }
            if attach_auth:
                token = await self.get_auth_token(
                    force_refresh=force_refresh,
                    correlation_id=correlation_id,
                )
                force_refresh = False
                headers["Authorization"] = f"Bearer {token}"

            try:
                response = await self._client.request(
                    method, path, json=json, params=params, headers=headers
                )
            except httpx.TransportError as exc:
                if attempt < max_attempts:
                    logger.warning(
                        "Shiprocket %s network error on attempt %d: %s",
                        operation,
                        attempt,
                        exc,
                    )
                    await self._backoff(attempt)
                    continue
                _log(False, ProviderErrorCode.PROVIDER_UNAVAILABLE)
                raise ShippingProviderError(
                    ProviderErrorCode.PROVIDER_UNAVAILABLE,
                    f"Shiprocket request failed: {exc}",
                    details={
                        "provider": self.provider,
                        "operation": operation,
                    },
                    correlation_id=correlation_id,
                ) from exc

            body = self._parse_body(response)
            status = response.status_code
            if status < 300:
                _log(True)
                return body

            if (
                status == 401
                and attach_auth
                and allow_401_refresh
                and not refreshed
            ):
                refreshed = True
                force_refresh = True
                continue

            if (
                retryable
                and (status == 429 or status >= 500)
                and attempt < max_attempts
            ):
                await self._backoff(attempt)
                continue

            error = self._to_api_error(
                status,
                body,
                f"Shiprocket {operation} failed with HTTP {status}.",
                correlation_id,
            )
            _log(False, error.code)
            raise error

    # Quote

    def _to_quote_error(
        self,
        error: ShippingProviderError,
        correlation_id: str,
        phase: str,
    ) -> ShippingProviderError:
        default_message = (
            "Shiprocket serviceability check failed."
            if phase == "serviceability"
            else "Shiprocket rate calculator failed."
        )
        status = error.details.get("status")
        if error.code in (
            ProviderErrorCode.AUTH_FAILED,
            ProviderErrorCode.RATE_LIMITED,
        ):
            return error

        details = {**error.details, "provider": self.provider, "phase": phase}
        if status in (400, 422):
            return ShippingProviderError(
                ProviderErrorCode.SERVICEABILITY_FAILED,
                error.message or default_message,
                details=details,
                correlation_id=correlation_id,
            )
        if error.code in (
            ProviderErrorCode.PROVIDER_UNAVAILABLE,
            ProviderErrorCode.UPSTREAM_ERROR,
        ) or (isinstance(status, int) and 500 <= status < 600):
            return ShippingProviderError(
                ProviderErrorCode.UPSTREAM_ERROR,
                error.message or default_message,
                details=details,
                correlation_id=correlation_id,
            )
        return error

    async def quote(self, request: QuoteRequest) -> QuoteResponse:
        correlation_id = self._correlation_id(request.correlation_id)
        weight_kg = _grams_to_kg(
            sum(parcel.weight_grams for parcel in request.parcels)
        )
        cod = bool(request.cod and request.cod.enabled)
        pickup = request.pickup_address.postal_code
        delivery = request.delivery_address.postal_code

        try:
            body = await self._request(
                "GET",
                self.settings.serviceability_path,
                operation="serviceability",
                params={
                    "pickup_postcode": pickup,
                    "delivery_postcode": delivery,
                    "cod": 1 if cod else 0,
                    "weight": weight_kg,
                },
                correlation_id=correlation_id,
            )
        except ShippingProviderError as exc:
            raise self._to_quote_error(
                exc, correlation_id, "serviceability"
            ) from exc

        data = as_mapping(body.get("data"))
        companies = data.get("available_courier_companies") or body.get(
            "available_courier_companies"
        )
        if not isinstance(companies, list) or not companies:
            raise ShippingProviderError(
                ProviderErrorCode.SERVICEABILITY_FAILED,
                "No Shiprocket courier is serviceable for this route.",
                details={
                    "provider": self.provider,
                    "pickup_postcode": pickup,
                    "delivery_postcode": delivery,
                },
                correlation_id=correlation_id,
            )

        parcel = request.parcels[0]
        declared_value = sum(p.declared_value or 0 for p in request.parcels)
        rate_payload: dict[str, Any] = {
            "pickup_postcode": pickup,
            "delivery_postcode": delivery,
            "cod": 1 if cod else 0,
            "weight": weight_kg,
            "length": parcel.dimensions_cm.l,
            "breadth": parcel.dimensions_cm.w,
            "height": parcel.dimensions_cm.h,
            "courier_company_ids": [
                read_text(company.get("courier_company_id"))
                for company in companies
                if read_text(as_mapping(company).get("courier_company_id"))
            ],
        }
        if declared_value > 0:
            rate_payload["declared_value"] = declared_value

        try:
            rate_body = await self._request(
                "POST",
                self.settings.rate_calculator_path,
                operation="rate-calculator",
                json=rate_payload,
                correlation_id=correlation_id,
            )
        except ShippingProviderError as exc:
            raise self._to_quote_error(
                exc, correlation_id, "rate_calculator"
            ) from exc

        rates = self._extract_rates(rate_body)
        if not rates:
            raise ShippingProviderError(
                ProviderErrorCode.UPSTREAM_ERROR,
                "Shiprocket rate calculator returned no rates.",
                details={
                    "provider": self.provider,
                    "phase": "rate_calculator",
                },
                correlation_id=correlation_id,
            )

        serviceable = {
            read_text(company.get("courier_company_id")): company
            for company in map(as_mapping, companies)
        }
        return QuoteResponse(
            quotes=[
                self._to_quote_option(
                    rate,
                    serviceable.get(read_text(rate.get("courier_company_id"))),
                    request.currency_code,
                )
                for rate in rates
            ]
        )

    @staticmethod
    def _extract_rates(body: dict[str, Any]) -> list[dict[str, Any]]:
        data = as_mapping(body.get("data"))
        for source in (data, body):
            for key in _RATE_LIST_KEYS:
                value = source.get(key)
                if isinstance(value, list) and value:
                    return [as_mapping(item) for item in value]
        return []

    def _to_quote_option(
        self,
        rate: dict[str, Any],
        match: dict[str, Any] | None,
        currency_code: str,
    ) -> QuoteOption:
        match = match or {}
        company_id = first_non_empty(
            rate.get("courier_company_id"), match.get("courier_company_id")
        )
        courier_name = first_non_empty(
            rate.get("courier_name"), match.get("courier_name")
        )
        price = (
            _to_number(rate.get("freight_charge"))
            or _to_number(rate.get("rate"))
            or _to_number(match.get("freight_charge"))
            or _to_number(match.get("rate"))
        )
        etd = _to_number(rate.get("etd")) or _to_number(match.get("etd"))
        return QuoteOption(
            service_code=company_id or courier_name or "shiprocket",
            service_name=courier_name or "Shiprocket",
            price=max(0.0, price),
            currency_code=currency_code,
            eta_days=math.ceil(etd) if etd > 0 else None,
            cod_supported=bool(rate.get("cod")) or bool(match.get("cod")),
            metadata={
                "provider": self.provider,
                "courier_company_id": company_id or None,
            },
        )

    # Booking

    def _booking_payload(
        self, request: CreateShipmentRequest
    ) -> dict[str, Any]:
        address = request.delivery_address
        metadata = request.metadata or {}
        parcel = request.parcels[0]
        sub_total = sum(
            (item.unit_price or 0) * item.qty for item in request.line_items
        )
        return {
            "order_id": request.internal_reference,
            "channel_order_id": request.internal_reference,
            "order_date": date.today().isoformat(),
            "pickup_location": read_text(metadata.get("pickup_location_code"))
            or "Primary",
            "comment": request.notes or "",
            "billing_customer_name": address.name,
            "billing_last_name": "",
            "billing_address": address.line1,
            "billing_address_2": address.line2 or "",
            "billing_city": address.city,
            "billing_pincode": address.postal_code,
            "billing_state": address.state,
            "billing_country": address.country_code,
            "billing_email": address.email or "",
            "billing_phone": address.phone,
            "shipping_is_billing": True,
            "shipping_customer_name": address.name,
            "shipping_address": address.line1,
            "shipping_address_2": address.line2 or "",
            "shipping_city": address.city,
            "shipping_pincode": address.postal_code,
            "shipping_state": address.state,
            "shipping_country": address.country_code,
            "shipping_phone": address.phone,
            "order_items": [
                {
                    "name": item.name,
                    "sku": item.sku,
                    "units": item.qty,
                    "selling_price": item.unit_price or 0,
                }
                for item in request.line_items
            ],
            "payment_method": "COD" if request.cod.enabled else "Prepaid",
            "sub_total": sub_total,
            "length": parcel.dimensions_cm.l,
            "breadth": parcel.dimensions_cm.w,
            "height": parcel.dimensions_cm.h,
            "weight": _grams_to_kg(
                sum(p.weight_grams for p in request.parcels)
            ),
        }

    def _to_booking_response(
        self,
        body: dict[str, Any],
        *,
        internal_reference: str | None,
        default_status: ShipmentStatus,
    ) -> CreateShipmentResponse | None:
        data = as_mapping(body.get("data")) or as_mapping(body.get("payload"))
        shipments = data.get("shipments")
        if isinstance(shipments, list):
            shipments = shipments[0] if shipments else {}
        shipment = as_mapping(shipments)

        shipment_id = first_non_empty(
            body.get("shipment_id"),
            data.get("shipment_id"),
            shipment.get("id"),
            data.get("id"),
            body.get("id"),
        )
        if not shipment_id:
            return None

        awb = first_non_empty(
            data.get("awb_code"), body.get("awb_code"), shipment.get("awb")
        )
        label_url = first_non_empty(
            data.get("label_url"), body.get("label_url")
        )
        provider_order_id = first_non_empty(
            data.get("order_id"), body.get("order_id")
        )
        status = map_shiprocket_status(
            first_non_empty(data.get("status"), body.get("status")),
            default=default_status,
        )
        booked_at = self._clock()

        label = None
        if label_url:
            expires_at = _parse_datetime(
                data.get("label_expires_at") or body.get("label_expires_at")
            ) or booked_at + timedelta(hours=self.settings.label_ttl_hours)
            label = LabelResponse(
                shipment_id=shipment_id,
                label_url=label_url,
                label_expires_at=expires_at,
            )

        return CreateShipmentResponse(
            shipment_id=shipment_id,
            tracking_number=awb or None,
            tracking_url=TRACKING_URL.format(awb=awb) if awb else None,
            status=status,
            label=label,
            booked_at=booked_at,
            metadata={
                "provider": self.provider,
                "internal_reference": internal_reference,
                "provider_order_id": provider_order_id or None,
            },
        )

    async def create_shipment(
        self, request: CreateShipmentRequest
    ) -> CreateShipmentResponse:
        correlation_id = self._correlation_id(request.correlation_id)
        if not self.booking_enabled:
            raise ShippingProviderError(
                ProviderErrorCode.BOOKING_DISABLED,
                "Shiprocket booking is disabled.",
                details={"provider": self.provider},
                correlation_id=correlation_id,
            )

        body = await self._request(
            "POST",
            self.settings.create_shipment_path,
            operation="create-shipment",
            json=self._booking_payload(request),
            correlation_id=correlation_id,
        )
        response = self._to_booking_response(
            body,
            internal_reference=request.internal_reference,
            default_status=ShipmentStatus.BOOKED,
        )
        if response is None:
            raise self._to_api_error(
                200,
                body,
                "Shiprocket booking response did not include a shipment id.",
                correlation_id,
            )
        return response

    def _lookup_path(self, reference: str) -> str:
        template = self.settings.lookup_by_reference_path
        encoded = url_quote(reference, safe="")
        if "{reference}" in template:
            return template.replace("{reference}", encoded)
        separator = "&" if "?" in template else "?"
        return f"{template}{separator}order_id={encoded}"

    async def find_shipment_by_reference(
        self, request: LookupShipmentByReferenceRequest
    ) -> CreateShipmentResponse | None:
        correlation_id = self._correlation_id(request.correlation_id)
        try:
            body = await self._request(
                "GET",
                self._lookup_path(request.internal_reference),
                operation="lookup-by-reference",
                correlation_id=correlation_id,
            )
        except ShippingProviderError as exc:
            if exc.details.get("status") == 404:
                return None
            raise
        return self._to_booking_response(
            body,
            internal_reference=request.internal_reference,
            default_status=ShipmentStatus.BOOKED,
        )

    # Labels

    async def get_label(self, request: GetLabelRequest) -> LabelResponse:
        correlation_id = self._correlation_id(request.correlation_id)

        async def _generate() -> dict[str, Any]:
            return await self._request(
                "POST",
                GENERATE_LABEL_PATH,
                operation="getLabel",
                json={"shipment_id": [request.shipment_id]},
                correlation_id=correlation_id,
            )

        def _label_url(body: dict[str, Any]) -> str:
            data = as_mapping(body.get("data"))
            return first_non_empty(
                data.get("label_url"), body.get("label_url")
            )

        body = await _generate()
        regenerated = False
        if not _label_url(body) and request.regenerate_if_expired:
            body = await _generate()
            regenerated = True

        label_url = _label_url(body)
        if not label_url:
            raise self._to_api_error(
                200,
                body,
                "Shiprocket did not return a label URL.",
                correlation_id,
            )

        data = as_mapping(body.get("data"))
        created_at = (
            _parse_datetime(data.get("label_created_at")) or self._clock()
        )
        return LabelResponse(
            shipment_id=request.shipment_id,
            label_url=label_url,
            label_expires_at=created_at
            + timedelta(hours=self.settings.label_ttl_hours),
            regenerated=regenerated,
        )

    # Tracking

    async def track(self, request: TrackRequest) -> TrackingResponse:
        correlation_id = self._correlation_id(request.correlation_id)
        awb = request.tracking_number
        shipment_id = request.shipment_id

        if not awb and not shipment_id and request.internal_reference:
            found = await self.find_shipment_by_reference(
                LookupShipmentByReferenceRequest(
                    internal_reference=request.internal_reference,
                    correlation_id=correlation_id,
                )
            )
            if found is None:
                raise ShippingProviderError(
                    ProviderErrorCode.SERVICEABILITY_FAILED,
                    "No Shiprocket shipment found for this reference.",
                    details={
                        "provider": self.provider,
                        "internal_reference": request.internal_reference,
                    },
                    correlation_id=correlation_id,
                )
            awb = found.tracking_number
            shipment_id = found.shipment_id

        if awb:
            path = TRACK_AWB_PATH.format(awb=url_quote(awb, safe=""))
        else:
            path = TRACK_SHIPMENT_PATH.format(
                shipment_id=url_quote(shipment_id or "", safe="")
            )

        body = await self._request(
            "GET", path, operation="track", correlation_id=correlation_id
        )
        return self._to_tracking_response(body, shipment_id or awb or "", awb)

    def _to_tracking_response(
        self,
        body: dict[str, Any],
        shipment_id: str,
        awb: str | None,
    ) -> TrackingResponse:
        data = as_mapping(body.get("data"))
        tracking = as_mapping(body.get("tracking_data")) or as_mapping(
            data.get("tracking_data")
        )
        raw_events = tracking.get("shipment_track")
        if not isinstance(raw_events, list):
            raw_events = []

        events = []
        for raw in map(as_mapping, raw_events):
            raw_status = first_non_empty(
                raw.get("current_status"), raw.get("status"), raw.get("event")
            )
            events.append(
                TrackingEvent(
                    status=map_shiprocket_status(raw_status),
                    occurred_at=_parse_datetime(
                        first_non_empty(raw.get("datetime"), raw.get("date"))
                    )
                    or self._clock(),
                    location=first_non_empty(
                        raw.get("location"), raw.get("city")
                    )
                    or None,
                    message=read_text(raw.get("message")) or None,
                    raw_status=raw_status or None,
                )
            )

        shipment_status = read_text(tracking.get("shipment_status"))
        status = map_shiprocket_status_id(shipment_status) or (
            map_shiprocket_status(shipment_status, default=None)
            if shipment_status
            else None
        )
        if status is None and events:
            status = map_shiprocket_status(events[0].raw_status)
        if status is None:
            status = map_shiprocket_status(body.get("status"))

        return TrackingResponse(
            shipment_id=shipment_id,
            tracking_number=awb or None,
            status=status,
            events=events,
        )

    # Cancel

    async def cancel(self, request: CancelRequest) -> CancelResponse:
        correlation_id = self._correlation_id(request.correlation_id)
        try:
            body = await self._request(
                "POST",
                CANCEL_PATH,
                operation="cancel",
                json={"ids": [request.shipment_id]},
                retryable=False,
                correlation_id=correlation_id,
            )
        except ShippingProviderError as exc:
            if is_already_cancelled_message(exc.message):
                return CancelResponse(
                    shipment_id=request.shipment_id,
                    cancelled=True,
                    status=ShipmentStatus.CANCELLED,
                    cancelled_at=self._clock(),
                )
            if (
                exc.code == ProviderErrorCode.CANNOT_CANCEL_IN_STATE
                or is_not_cancellable_message(exc.message)
            ):
                raise self._cannot_cancel(
                    request.shipment_id, correlation_id, exc.details
                ) from exc
            raise

        data = as_mapping(body.get("data"))
        message = extract_error_message(body, "")
        cancelled = (
            is_cancel_success_message(message)
            or body.get("cancelled") is True
            or data.get("cancelled") is True
        )
        if not cancelled and is_not_cancellable_message(message):
            raise self._cannot_cancel(
                request.shipment_id, correlation_id, {"status": 200}
            )

        return CancelResponse(
            shipment_id=request.shipment_id,
            cancelled=cancelled,
            status=(
                ShipmentStatus.CANCELLED
                if cancelled
                else ShipmentStatus.BOOKED
            ),
            cancelled_at=self._clock() if cancelled else None,
        )

    def _cannot_cancel(
        self,
        shipment_id: str,
        correlation_id: str,
        details: dict[str, Any],
    ) -> ShippingProviderError:
        return ShippingProviderError(
            ProviderErrorCode.CANNOT_CANCEL_IN_STATE,
            "Shipment cannot be cancelled in current carrier state.",
            details={
                **details,
                "provider": self.provider,
                "shipment_id": shipment_id,
            },
            correlation_id=correlation_id,
        )

    # Health

    async def health_check(self) -> HealthCheckResponse:
        try:
            await self._request(
                "GET",
                self.settings.serviceability_path,
                operation="healthCheck",
                params={
                    "pickup_postcode": "110001",
                    "delivery_postcode": "110001",
                    "cod": 0,
                    "weight": 0.5,
                },
            )
        except ShippingProviderError as exc:
            return HealthCheckResponse(
                ok=False,
                provider=self.provider,
                checked_at=self._clock(),
                details={"code": exc.code.value, "message": exc.message},
            )
        return HealthCheckResponse(
            ok=True, provider=self.provider, checked_at=self._clock()
        )

    # Webhooks

    def verify_webhook(self, request: WebhookRequest) -> bool:
        """Check source IP, then the static token or the HMAC signature.

        Verification fails closed when neither a token nor a secret is
        configured.
        """
        headers = request.headers
        allowlist = parse_ip_allowlist(self.settings.webhook_ip_allowlist)
        if allowlist and source_ip(headers) not in allowlist:
            return False

        token = read_text(self.settings.webhook_token)
        if token and constant_time_equal(
            token, read_header(headers, WEBHOOK_TOKEN_HEADER)
        ):
            return True

        secret = read_text(self.settings.webhook_secret)
        if not secret:
            return False

        header_names = (
            self.settings.webhook_signature_header or DEFAULT_SIGNATURE_HEADER,
            DEFAULT_SIGNATURE_HEADER,
            *FALLBACK_SIGNATURE_HEADERS,
        )
        provided = ""
        for name in header_names:
            provided = read_header(headers, name)
            if provided:
                break
        provided = normalize_signature(provided)
        if not provided:
            return False

        expected = compute_signature(secret, request.raw_body)
        return constant_time_equal(provided, expected)
