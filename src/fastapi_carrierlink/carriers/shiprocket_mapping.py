"""Shiprocket status, error and webhook payload mapping."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from fastapi_carrierlink.exceptions import ProviderErrorCode
from fastapi_carrierlink.schemas import ShipmentStatus

SHIPROCKET_PROVIDER = "shiprocket"
DEFAULT_SIGNATURE_HEADER = "x-shiprocket-signature"
FALLBACK_SIGNATURE_HEADERS = ("x-webhook-signature", "x-signature")
WEBHOOK_TOKEN_HEADER = "anx-api-key"
SOURCE_IP_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "cf-connecting-ip",
    "x-client-ip",
)

STATUS_BY_ID: dict[int, ShipmentStatus] = {
    1: ShipmentStatus.BOOKED,
    2: ShipmentStatus.PICKUP_SCHEDULED,
    3: ShipmentStatus.PICKUP_SCHEDULED,
    4: ShipmentStatus.PICKUP_SCHEDULED,
    5: ShipmentStatus.PICKUP_SCHEDULED,
    6: ShipmentStatus.IN_TRANSIT,
    7: ShipmentStatus.DELIVERED,
    8: ShipmentStatus.CANCELLED,
    9: ShipmentStatus.RTO_INITIATED,
    10: ShipmentStatus.RTO_IN_TRANSIT,
    11: ShipmentStatus.RTO_DELIVERED,
    12: ShipmentStatus.FAILED,
}

_ALREADY_CANCELLED = (
    "already cancelled",
    "already canceled",
    "already been cancelled",
    "already been canceled",
)
_CANCEL_SUCCESS = (
    "cancelled successfully",
    "canceled successfully",
    "order cancelled",
    "order canceled",
)
_NOT_CANCELLABLE = (
    "not cancellable",
    "cannot cancel",
    "can't cancel",
    "cannot be cancelled",
    "cannot be canceled",
    "already shipped",
    "has been shipped",
)
_SERVICEABILITY_PHRASES = ("serviceable", "pincode", "postcode")
_ADDRESS_PHRASES = ("invalid address", "address is invalid", "invalid pickup")
_NETWORK_PHRASES = ("timeout", "network", "temporarily unavailable")


def read_text(value: Any) -> str:
    """Stringify ids the way Shiprocket sends them (ints, floats, text)."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return str(int(value))
    if isinstance(value, (int, str)):
        return str(value).strip()
    return ""


def first_non_empty(*values: Any) -> str:
    for value in values:
        text = read_text(value)
        if text:
            return text
    return ""


def as_mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _normalize_message(message: Any) -> str:
    return read_text(message).lower()


def is_already_cancelled_message(message: Any) -> bool:
    normalized = _normalize_message(message)
    return any(phrase in normalized for phrase in _ALREADY_CANCELLED)


def is_cancel_success_message(message: Any) -> bool:
    normalized = _normalize_message(message)
    return is_already_cancelled_message(normalized) or any(
        phrase in normalized for phrase in _CANCEL_SUCCESS
    )


def is_not_cancellable_message(message: Any) -> bool:
    normalized = _normalize_message(message)
    return any(phrase in normalized for phrase in _NOT_CANCELLABLE)


def map_shiprocket_status(
    raw_status: Any,
    default: ShipmentStatus | None = ShipmentStatus.BOOKING_IN_PROGRESS,
) -> ShipmentStatus | None:
    """Map Shiprocket status text such as ``"RTO-DELIVERED"``."""
    normalized = (
        read_text(raw_status).lower().replace("_", " ").replace("-", " ")
    )
    if not normalized:
        return default

    if "rto" in normalized:
        if "delivered" in normalized:
            return ShipmentStatus.RTO_DELIVERED
        if "transit" in normalized:
            return ShipmentStatus.RTO_IN_TRANSIT
        return ShipmentStatus.RTO_INITIATED
    if "cancel" in normalized or "void" in normalized:
        return ShipmentStatus.CANCELLED
    if (
        "deliver" in normalized
        and "out for" not in normalized
        and "undeliver" not in normalized
    ):
        return ShipmentStatus.DELIVERED
    if normalized == "ofd" or "out for delivery" in normalized:
        return ShipmentStatus.OFD
    if any(m in normalized for m in ("transit", "shipped", "manifest")):
        return ShipmentStatus.IN_TRANSIT
    if "pickup" in normalized or "ready" in normalized:
        return ShipmentStatus.PICKUP_SCHEDULED
    if any(m in normalized for m in ("booked", "new", "create")):
        return ShipmentStatus.BOOKED
    if any(m in normalized for m in ("fail", "undeliver", "exception")):
        return ShipmentStatus.FAILED
    return default


def map_shiprocket_status_id(status_id: Any) -> ShipmentStatus | None:
    text = read_text(status_id)
    try:
        return STATUS_BY_ID.get(int(float(text)))
    except ValueError:
        return None


def map_shiprocket_error_code(
    status: int | None, message: Any = None
) -> ProviderErrorCode:
    normalized = _normalize_message(message)
    if is_not_cancellable_message(normalized):
        return ProviderErrorCode.CANNOT_CANCEL_IN_STATE
    if status in (401, 403):
        return ProviderErrorCode.AUTH_FAILED
    if status == 429:
        return ProviderErrorCode.RATE_LIMITED
    if status is not None and status >= 500:
        return ProviderErrorCode.PROVIDER_UNAVAILABLE
    if any(phrase in normalized for phrase in _SERVICEABILITY_PHRASES):
        return ProviderErrorCode.SERVICEABILITY_FAILED
    if any(phrase in normalized for phrase in _ADDRESS_PHRASES):
        return ProviderErrorCode.INVALID_ADDRESS
    if any(phrase in normalized for phrase in _NETWORK_PHRASES):
        return ProviderErrorCode.PROVIDER_UNAVAILABLE
    return ProviderErrorCode.UPSTREAM_ERROR


def extract_error_message(body: Mapping[str, Any], fallback: str) -> str:
    data = as_mapping(body.get("data"))
    for source in (body, data):
        for key in ("message", "error", "detail", "description"):
            text = read_text(source.get(key))
            if text:
                return text
    return fallback


# Webhook helpers


def read_header(headers: Mapping[str, Any], name: str) -> str:
    target = name.strip().lower()
    for key, value in headers.items():
        if str(key).strip().lower() != target:
            continue
        if isinstance(value, (list, tuple)):
            value = value[0] if value else ""
        return read_text(value)
    return ""


def normalize_ip(value: Any) -> str:
    text = read_text(value).lower()
    if text.startswith("::ffff:"):
        return text[len("::ffff:") :]
    return text


def parse_ip_allowlist(value: str | None) -> list[str]:
    return [ip for ip in map(normalize_ip, (value or "").split(",")) if ip]


def source_ip(headers: Mapping[str, Any]) -> str:
    for name in SOURCE_IP_HEADERS:
        candidate = read_header(headers, name)
        if name == "x-forwarded-for":
            candidate = candidate.split(",")[0]
        normalized = normalize_ip(candidate)
        if normalized:
            return normalized
    return ""


def normalize_signature(value: str) -> str:
    text = read_text(value)
    if "," in text:
        text = text.split(",")[0].strip()
    if text.lower().startswith("sha256="):
        text = text[len("sha256=") :]
    return text.strip().lower()


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def constant_time_equal(left: str, right: str) -> bool:
    if not left or not right:
        return False
    return hmac.compare_digest(left.encode(), right.encode())


@dataclass
class NormalizedWebhookEvent:
    """Webhook delivery reduced to ids, status and payload."""

    provider_event_id: str
    event_type: str
    status: ShipmentStatus | None = None
    provider_shipment_id: str | None = None
    provider_awb: str | None = None
    internal_reference: str | None = None
    provider_order_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


def derive_provider_event_id(
    *,
    provider_awb: str,
    current_timestamp: str,
    current_status_id: str,
    shipment_status_id: str,
    raw_body: bytes,
) -> str:
    seed = (
        f"{provider_awb}|{current_timestamp}|"
        f"{current_status_id}|{shipment_status_id}"
    )
    material = raw_body if seed == "|||" else seed.encode()
    return "srwh_" + hashlib.sha256(material).hexdigest()


def normalize_shiprocket_webhook(
    body: Any, raw_body: bytes = b""
) -> NormalizedWebhookEvent:
    """Pull ids and status from a Shiprocket webhook body.

    Fields are looked up on the payload itself, then ``data``,
    ``data.shipment`` and ``data.shipment_details``.
    """
    payload = as_mapping(body)
    data = as_mapping(payload.get("data"))
    shipment = as_mapping(data.get("shipment"))
    details = as_mapping(data.get("shipment_details"))
    sources = (payload, data, shipment, details)

    def pick(*keys: str) -> str:
        return first_non_empty(
            *(source.get(key) for source in sources for key in keys)
        )

    provider_shipment_id = first_non_empty(
        payload.get("shipment_id"),
        payload.get("shipmentId"),
        data.get("shipment_id"),
        data.get("shipmentId"),
        shipment.get("shipment_id"),
        shipment.get("shipmentId"),
        shipment.get("id"),
        details.get("shipment_id"),
        details.get("shipmentId"),
    )
    provider_awb = pick("awb", "awb_code", "tracking_number")
    internal_reference = pick("order_id", "orderId")
    provider_order_id = pick("sr_order_id", "shiprocket_order_id")
    current_timestamp = first_non_empty(
        pick("current_timestamp"),
        payload.get("current_status_datetime"),
        data.get("current_status_datetime"),
        payload.get("updated_at"),
        data.get("updated_at"),
    )
    current_status_id = pick("current_status_id")
    shipment_status_id = pick("shipment_status_id")

    status_text = pick("current_status", "status", "shipment_status")
    status = map_shiprocket_status(status_text, default=None)
    if status is None:
        status = map_shiprocket_status_id(
            first_non_empty(current_status_id, shipment_status_id)
        )

    if status is not None:
        event_type = status.value.lower()
    else:
        event_type = (
            first_non_empty(
                payload.get("event"),
                payload.get("event_type"),
                payload.get("type"),
                data.get("event"),
                data.get("event_type"),
                data.get("type"),
                status_text,
            )
            or "shiprocket.webhook"
        ).lower()

    return NormalizedWebhookEvent(
        provider_event_id=derive_provider_event_id(
            provider_awb=provider_awb,
            current_timestamp=current_timestamp,
            current_status_id=current_status_id,
            shipment_status_id=shipment_status_id,
            raw_body=raw_body,
        ),
        event_type=event_type,
        status=status,
        provider_shipment_id=provider_shipment_id or None,
        provider_awb=provider_awb or None,
        internal_reference=internal_reference or None,
        provider_order_id=provider_order_id or None,
        payload=dict(payload),
    )
