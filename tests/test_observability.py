"""Correlation id and provider call logging tests."""

import logging
import uuid

from fastapi_carrierlink.correlation import (
    correlation_id_var,
    get_correlation_id,
    normalize_correlation_id,
)
from fastapi_carrierlink.observability import (
    PROVIDER_CALL_EVENT,
    log_provider_call,
)


def test_normalize_keeps_safe_ids() -> None:
    assert normalize_correlation_id(" req-123:abc ") == "req-123:abc"


def test_normalize_replaces_unsafe_ids() -> None:
    for value in (None, "", "has space", "x" * 200, "semi;colon"):
        generated = normalize_correlation_id(value)
        assert uuid.UUID(generated)


def test_log_provider_call_record(caplog) -> None:
    token = correlation_id_var.set("ctx-1")
    try:
        with caplog.at_level(logging.INFO):
            fields = log_provider_call(
                provider=" ShipRocket ",
                method="Quote",
                duration_ms=12.6,
                success=True,
            )
    finally:
        correlation_id_var.reset(token)

    assert fields["event"] == PROVIDER_CALL_EVENT
    assert fields["provider"] == "shiprocket"
    assert fields["method"] == "quote"
    assert fields["duration_ms"] == 13
    assert fields["correlation_id"] == "ctx-1"
    assert caplog.records[-1].levelno == logging.INFO
    assert caplog.records[-1].carrierlink == fields
    assert get_correlation_id() is None


def test_failed_call_logs_error(caplog) -> None:
    with caplog.at_level(logging.INFO):
        fields = log_provider_call(
            provider="fake",
            method="track",
            duration_ms=-5,
            success=False,
            error_code="rate_limited",
        )

    assert fields["duration_ms"] == 0
    assert fields["error_code"] == "RATE_LIMITED"
    assert caplog.records[-1].levelno == logging.ERROR
