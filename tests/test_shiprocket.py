"""Shiprocket adapter tests against a mocked HTTP transport."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from conftest import create_shipment_request, quote_request
from fastapi_carrierlink.carriers.shiprocket import ShiprocketProvider
from fastapi_carrierlink.config import ShiprocketSettings
from fastapi_carrierlink.exceptions import (
    ProviderErrorCode,
    ShippingProviderError,
)
from fastapi_carrierlink.schemas import (
    CancelRequest,
    CreateShipmentRequest,
    GetLabelRequest,
    LookupShipmentByReferenceRequest,
    QuoteRequest,
    ShipmentStatus,
    TrackRequest,
    WebhookRequest,
)

LOGIN = "/v1/external/auth/login"
SERVICEABILITY = "/v1/external/courier/serviceability/"
CREATE = "/v1/external/shipments/create/forward-shipment"
LABEL = "/v1/external/courier/generate/label"
CANCEL = "/v1/external/orders/cancel"
NOW = datetime(2026, 3, 1, 10, 0, tzinfo=UTC)


class ShiprocketStub:
    """Queue of canned responses per (method, path).

    The last queued response repeats once the others are used up.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, *responses) -> None:
        self.routes[(method, path)] = list(responses)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method and r.url.path == path
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes[(request.method, request.url.path)]
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        status, body = response
        return httpx.Response(status, json=body)


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def stub() -> ShiprocketStub:
    stub = ShiprocketStub()
    stub.add("POST", LOGIN, (200, {"token": "tok-1"}))
    return stub


@pytest.fixture()
def clock() -> Clock:
    return Clock()


def make_provider(stub, sleep, clock=None, **settings) -> ShiprocketProvider:
    settings.setdefault("email", "ops@example.com")
    settings.setdefault("password", "pw")
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(stub), base_url="https://sr.test"
    )
    return ShiprocketProvider(
        ShiprocketSettings(**settings),
        client=client,
        sleep=sleep,
        clock=clock,
    )


class TestAuth:
    async def test_static_token_skips_login(self, stub, sleep) -> None:
        stub.add("GET", SERVICEABILITY, (200, {}))
        provider = make_provider(stub, sleep, token="static")

        result = await provider.health_check()

        assert result.ok is True
        assert stub.calls("POST", LOGIN) == []
        request = stub.calls("GET", SERVICEABILITY)[0]
        assert request.headers["Authorization"] == "Bearer static"

    async def test_concurrent_callers_share_one_login(
        self, stub, sleep
    ) -> None:
        provider = make_provider(stub, sleep)

        tokens = await asyncio.gather(
            *(provider.get_auth_token() for _ in range(5))
        )

        assert tokens == ["tok-1"] * 5
        assert len(stub.calls("POST", LOGIN)) == 1

    async def test_token_is_cached_until_refresh_skew(
        self, stub, sleep, clock
    ) -> None:
        stub.add(
            "POST",
            LOGIN,
            (200, {"token": "tok-1", "expires_in": 3600}),
            (200, {"token": "tok-2", "expires_in": 3600}),
        )
        provider = make_provider(stub, sleep, clock)

        assert await provider.get_auth_token() == "tok-1"
        clock.now += timedelta(minutes=49)
        assert await provider.get_auth_token() == "tok-1"
        clock.now += timedelta(minutes=1)
        assert await provider.get_auth_token() == "tok-2"
        assert len(stub.calls("POST", LOGIN)) == 2

    async def test_expiry_is_never_under_a_minute(
        self, stub, sleep, clock
    ) -> None:
        stub.add(
            "POST",
            LOGIN,
            (200, {"token": "tok-1", "expires_at": "2020-01-01T00:00:00Z"}),
        )
        provider = make_provider(stub, sleep, clock)

        await provider.get_auth_token()

        assert provider._token_expires_at == NOW + timedelta(seconds=60)

    async def test_missing_credentials_fail_auth(self, stub, sleep) -> None:
        provider = make_provider(stub, sleep, email=None, password=None)

        with pytest.raises(ShippingProviderError) as exc_info:
            await provider.get_auth_token()

        assert exc_info.value.code == ProviderErrorCode.AUTH_FAILED

    async def test_401_forces_one_refresh_and_retry(
        self, stub, sleep
    ) -> None:
        stub.add(
            "POST",
            LOGIN,
            (200, {"token": "tok-1"}),
            (200, {"token": "tok-2"}),
        )
        path = "/v1/external/courier/track/awb/AWB1"
        stub.add(
            "GET",
            path,
            (401, {"message": "Token expired"}),
            (200, {"tracking_data": {"shipment_status": 6}}),
        )
        provider = make_provider(stub, sleep)

        result = await provider.track(TrackRequest(tracking_number="AWB1"))

        assert result.status == ShipmentStatus.IN_TRANSIT
        auth_headers = [
            r.headers["Authorization"] for r in stub.calls("GET", path)
        ]
        assert auth_headers == ["Bearer tok-1", "Bearer tok-2"]
        assert sleep.delays == []


class TestRequestPolicy:
    async def test_retries_5xx_for_retryable_operations(
        self, stub, sleep
    ) -> None:
        path = "/v1/external/courier/track/awb/AWB1"
        stub.add(
            "GET",
            path,
            (503, {"message": "busy"}),
            (502, {"message": "busy"}),
            (200, {"tracking_data": {"shipment_status": 7}}),
        )
        provider = make_provider(stub, sleep, retry_jitter_ms=0)

        result = await provider.track(TrackRequest(tracking_number="AWB1"))

        assert result.status == ShipmentStatus.DELIVERED
        assert sleep.delays == [0.2, 0.4]

    async def test_gives_up_after_attempt_cap(self, stub, sleep) -> None:
        path = "/v1/external/courier/track/awb/AWB1"
        stub.add("GET", path, (429, {"message": "Too many requests"}))
        provider = make_provider(stub, sleep)

        with pytest.raises(ShippingProviderError) as exc_info:
            await provider.track(TrackRequest(tracking_number="AWB1"))

        assert exc_info.value.code == ProviderErrorCode.RATE_LIMITED
        assert len(stub.calls("GET", path)) == 3

    async def test_create_shipment_is_single_attempt(
        self, stub, sleep
    ) -> None:
        stub.add("POST", CREATE, (500, {"message": "internal error"}))
        provider = make_provider(stub, sleep)

        with pytest.raises(ShippingProviderError) as exc_info:
            await provider.create_shipment(
                CreateShipmentRequest(**create_shipment_request())
            )

        assert exc_info.value.code == ProviderErrorCode.PROVIDER_UNAVAILABLE
        assert exc_info.value.details["status"] == 500
        assert len(stub.calls("POST", CREATE)) == 1

    async def test_network_errors_become_provider_unavailable(
        self, stub, sleep
    ) -> None:
        path = "/v1/external/courier/track/awb/AWB1"
        stub.add("GET", path, httpx.ConnectError("refused"))
        provider = make_provider(stub, sleep)

        with pytest.raises(ShippingProviderError) as exc_info:
            await provider.track(TrackRequest(tracking_number="AWB1"))

        assert exc_info.value.code == ProviderErrorCode.PROVIDER_UNAVAILABLE
        assert len(sleep.delays) == 2


class TestQuote:
    async def test_maps_rates_to_quote_options(self, stub, sleep) -> None:
        stub.add(
            "GET",
            SERVICEABILITY,
            (
                200,
                {
                    "data": {
                        "available_courier_companies": [
                            {
                                "courier_company_id": 10,
                                "courier_name": "Delhivery",
                                "etd": "3",
                                "cod": 1,
                            }
                        ]
                    }
                },
            ),
        )
        stub.add(
            "POST",
            SERVICEABILITY,
            (
                200,
                {
                    "data": {
                        "rates": [
                            {"courier_company_id": 10, "freight_charge": 87.5}
                        ]
                    }
                },
            ),
        )
        provider = make_provider(stub, sleep)

        response = await provider.quote(QuoteRequest(**quote_request()))

        [option] = response.quotes
        assert option.service_code == "10"
        assert option.service_name == "Delhivery"
        assert option.price == 87.5
        assert option.eta_days == 3
        assert option.cod_supported is True
        assert option.currency_code == "INR"

        params = stub.calls("GET", SERVICEABILITY)[0].url.params
        assert params["pickup_postcode"] == "110001"
        assert params["delivery_postcode"] == "560001"
        assert params["cod"] == "0"
        assert params["weight"] == "1.2"

    async def test_bad_request_becomes_serviceability_failed(
        self, stub, sleep
    ) -> None:
        stub.add(
            "GET", SERVICEABILITY, (422, {"message": "Invalid delivery"})
        )
        provider = make_provider(stub, sleep)

        with pytest.raises(ShippingProviderError) as exc_info:
            await provider.quote(QuoteRequest(**quote_request()))

        assert exc_info.value.code == ProviderErrorCode.SERVICEABILITY_FAILED
        assert exc_info.value.details["phase"] == "serviceability"

    async def test_rate_calculator_outage_is_upstream_error(
        self, stub, sleep
    ) -> None:
        stub.add(
            "GET",
            SERVICEABILITY,
            (
                200,
                {
                    "available_courier_companies": [
                        {"courier_company_id": 10}
                    ]
                },
            ),
        )
        stub.add("POST", SERVICEABILITY, (500, {"message": "down"}))
        provider = make_provider(stub, sleep)

        with pytest.raises(ShippingProviderError) as exc_info:
            await provider.quote(QuoteRequest(**quote_request()))

        assert exc_info.value.code == ProviderErrorCode.UPSTREAM_ERROR
        assert exc_info.value.details["phase"] == "rate_calculator"

    async def test_auth_failure_passes_through(self, stub, sleep) -> None:
        stub.add("POST", LOGIN, (403, {"message": "Forbidden"}))
        provider = make_provider(stub, sleep)

        with pytest.raises(ShippingProviderError) as exc_info:
            await provider.quote(QuoteRequest(**quote_request()))

        assert exc_info.value.code == ProviderErrorCode.AUTH_FAILED


class TestBooking:
    async def test_kill_switch_makes_no_network_call(
        self, stub, sleep
    ) -> None:
        provider = make_provider(stub, sleep)
        provider.booking_enabled = False

        with pytest.raises(ShippingProviderError) as exc_info:
            await provider.create_shipment(
                CreateShipmentRequest(**create_shipment_request())
            )

        assert exc_info.value.code == ProviderErrorCode.BOOKING_DISABLED
        assert stub.requests == []

    async def test_create_shipment_reads_payload(
        self, stub, sleep, clock
    ) -> None:
        stub.add(
            "POST",
            CREATE,
            (
                200,
                {
                    "status": 1,
                    "payload": {
                        "order_id": 9001,
                        "shipment_id": 7001,
                        "awb_code": "AWB7001",
                        "label_url": "https://labels.test/7001.pdf",
                    },
                },
            ),
        )
        provider = make_provider(stub, sleep, clock)

        response = await provider.create_shipment(
            CreateShipmentRequest(**create_shipment_request())
        )

        assert response.shipment_id == "7001"
        assert response.tracking_number == "AWB7001"
        assert response.tracking_url == (
            "https://shiprocket.co/tracking/AWB7001"
        )
        assert response.status == ShipmentStatus.BOOKED
        assert response.metadata["provider_order_id"] == "9001"
        assert response.label.label_expires_at == NOW + timedelta(hours=24)

        sent = stub.calls("POST", CREATE)[0]
        body = json.loads(sent.content)
        assert body["order_id"] == "ord_1-1"
        assert body["payment_method"] == "Prepaid"
        assert body["sub_total"] == 500
        assert body["weight"] == 1.2

    async def test_lookup_by_reference_404_is_none(
        self, stub, sleep
    ) -> None:
        stub.add(
            "GET",
            "/v1/external/orders/show/ord_1-1",
            (404, {"message": "Order not found"}),
        )
        provider = make_provider(stub, sleep)

        found = await provider.find_shipment_by_reference(
            LookupShipmentByReferenceRequest(internal_reference="ord_1-1")
        )

        assert found is None


class TestLabelTrackCancel:
    async def test_label_is_regenerated_once_when_missing(
        self, stub, sleep, clock
    ) -> None:
        stub.add(
            "POST",
            LABEL,
            (200, {"label_created": 0}),
            (200, {"label_url": "https://labels.test/7001.pdf"}),
        )
        provider = make_provider(stub, sleep, clock)

        label = await provider.get_label(GetLabelRequest(shipment_id="7001"))

        assert label.regenerated is True
        assert label.label_url == "https://labels.test/7001.pdf"
        assert label.label_expires_at == NOW + timedelta(hours=24)
        assert len(stub.calls("POST", LABEL)) == 2

    async def test_track_maps_events(self, stub, sleep) -> None:
        stub.add(
            "GET",
            "/v1/external/courier/track/shipment/7001",
            (
                200,
                {
                    "tracking_data": {
                        "shipment_track": [
                            {
                                "current_status": "Out For Delivery",
                                "date": "2026-03-01 09:00:00",
                                "city": "Pune",
                            }
                        ]
                    }
                },
            ),
        )
        provider = make_provider(stub, sleep)

        result = await provider.track(TrackRequest(shipment_id="7001"))

        assert result.status == ShipmentStatus.OFD
        [event] = result.events
        assert event.location == "Pune"
        assert event.raw_status == "Out For Delivery"
        assert event.occurred_at == datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    async def test_cancel_success_message(self, stub, sleep) -> None:
        stub.add(
            "POST", CANCEL, (200, {"message": "Order cancelled successfully."})
        )
        provider = make_provider(stub, sleep)

        result = await provider.cancel(CancelRequest(shipment_id="9001"))

        assert result.cancelled is True
        assert result.status == ShipmentStatus.CANCELLED

    async def test_already_cancelled_counts_as_success(
        self, stub, sleep
    ) -> None:
        stub.add(
            "POST", CANCEL, (400, {"message": "Order is already cancelled"})
        )
        provider = make_provider(stub, sleep)

        result = await provider.cancel(CancelRequest(shipment_id="9001"))

        assert result.cancelled is True

    async def test_not_cancellable_maps_code(self, stub, sleep) -> None:
        stub.add(
            "POST",
            CANCEL,
            (400, {"message": "Order cannot be cancelled, already shipped"}),
        )
        provider = make_provider(stub, sleep)

        with pytest.raises(ShippingProviderError) as exc_info:
            await provider.cancel(CancelRequest(shipment_id="9001"))

        assert exc_info.value.code == ProviderErrorCode.CANNOT_CANCEL_IN_STATE
        assert len(stub.calls("POST", CANCEL)) == 1

    async def test_health_check_reports_failure(self, stub, sleep) -> None:
        stub.add("GET", SERVICEABILITY, (500, {"message": "down"}))
        provider = make_provider(stub, sleep)

        result = await provider.health_check()

        assert result.ok is False
        assert result.details["code"] == "PROVIDER_UNAVAILABLE"


def _signed(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestVerifyWebhook:
    body = b'{"awb":"AWB1","current_status":"Delivered"}'

    def provider(self, **settings) -> ShiprocketProvider:
        return ShiprocketProvider(ShiprocketSettings(**settings))

    def test_valid_hmac_signature(self) -> None:
        provider = self.provider(webhook_secret="s3cret")
        request = WebhookRequest(
            headers={
                "X-Shiprocket-Signature": "sha256="
                + _signed("s3cret", self.body)
            },
            raw_body=self.body,
        )

        assert provider.verify_webhook(request) is True

    def test_fallback_header_and_wrong_signature(self) -> None:
        provider = self.provider(webhook_secret="s3cret")
        good = WebhookRequest(
            headers={"x-signature": _signed("s3cret", self.body)},
            raw_body=self.body,
        )
        bad = WebhookRequest(
            headers={"x-signature": _signed("other", self.body)},
            raw_body=self.body,
        )

        assert provider.verify_webhook(good) is True
        assert provider.verify_webhook(bad) is False

    def test_fails_closed_without_secret(self) -> None:
        request = WebhookRequest(
            headers={"x-shiprocket-signature": "abc"}, raw_body=self.body
        )

        assert self.provider().verify_webhook(request) is False

    def test_static_token_header(self) -> None:
        provider = self.provider(webhook_token="hook-token")

        assert provider.verify_webhook(
            WebhookRequest(headers={"anx-api-key": "hook-token"})
        )
        assert not provider.verify_webhook(
            WebhookRequest(headers={"anx-api-key": "nope"})
        )

    def test_ip_allowlist_is_checked_first(self) -> None:
        provider = self.provider(
            webhook_token="hook-token",
            webhook_ip_allowlist="10.0.0.1, 10.0.0.2",
        )

        allowed = WebhookRequest(
            headers={
                "anx-api-key": "hook-token",
                "x-forwarded-for": "::ffff:10.0.0.2, 172.16.0.1",
            }
        )
        blocked = WebhookRequest(
            headers={
                "anx-api-key": "hook-token",
                "x-forwarded-for": "192.168.1.1",
            }
        )

        assert provider.verify_webhook(allowed) is True
        assert provider.verify_webhook(blocked) is False
