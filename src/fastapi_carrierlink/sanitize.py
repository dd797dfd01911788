"""Strip personal data from provider payloads before they are stored.

Only operational fields needed for shipping diagnostics survive:
anything naming a person, a phone number or a street address is dropped,
as are whole recipient/customer sub-objects. Nested objects and arrays
are kept only under allow-listed keys (arrays also under ``*_history``).
"""

from __future__ import annotations

from typing import Any

STRIP_KEYS = frozenset(
    {
        "name",
        "full_name",
        "first_name",
        "last_name",
        "phone",
        "mobile",
        "email",
        "address",
        "address1",
        "address2",
        "address_1",
        "address_2",
        "line1",
        "line2",
        "landmark",
        "customer_notes",
        "customer_note",
        "notes",
        "note",
    }
)

STRIP_OBJECT_KEYS = frozenset(
    {
        "recipient",
        "recipient_details",
        "customer",
        "customer_details",
        "consignee",
    }
)

ALLOW_KEYS = frozenset(
    {
        "provider",
        "provider_event_id",
        "provider_shipment_id",
        "provider_order_id",
        "shipment_id",
        "order_id",
        "sr_order_id",
        "shiprocket_order_id",
        "internal_reference",
        "awb",
        "awb_code",
        "awb_number",
        "tracking_number",
        "tracking_id",
        "service",
        "service_level",
        "service_code",
        "courier",
        "courier_code",
        "courier_name",
        "status",
        "current_status",
        "shipment_status",
        "status_code",
        "current_status_id",
        "shipment_status_id",
        "raw_status",
        "event",
        "event_type",
        "webhook_security",
        "security_mode",
        "security_reason",
        "error",
        "error_code",
        "error_type",
        "error_message",
        "timestamp",
        "current_timestamp",
        "created_at",
        "updated_at",
        "occurred_at",
        "picked_up_at",
        "delivered_at",
        "expected_delivery_at",
        "eta",
        "city",
        "state",
        "country",
        "country_code",
        "pincode",
        "postal_code",
        "zip",
        "weight",
        "weight_grams",
        "weight_kg",
        "dimensions",
        "dimensions_cm",
        "length",
        "width",
        "height",
        "l",
        "w",
        "h",
    }
)

_MISSING = object()


def _is_primitive(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def _sanitize_value(parent_key: str, value: Any) -> Any:
    if isinstance(value, list):
        items = [
            item
            for item in (_sanitize_value(parent_key, v) for v in value)
            if item is not _MISSING
        ]
        return items or _MISSING
    if isinstance(value, dict):
        nested = _sanitize_mapping(value)
        return nested or _MISSING
    if _is_primitive(value) and parent_key in ALLOW_KEYS:
        return value
    return _MISSING


def _sanitize_mapping(source: dict[str, Any]) -> dict[str, Any]:
    output: dict[str, Any] = {}
    for key, value in source.items():
        normalized = str(key).strip().lower()
        if normalized in STRIP_OBJECT_KEYS or normalized in STRIP_KEYS:
            continue

        if isinstance(value, list):
            items = [
                item
                for item in (_sanitize_value(normalized, v) for v in value)
                if item is not _MISSING
            ]
            if items and (
                normalized in ALLOW_KEYS or normalized.endswith("_history")
            ):
                output[key] = items
            continue

        if isinstance(value, dict):
            nested = _sanitize_mapping(value)
            if nested and normalized in ALLOW_KEYS:
                output[key] = nested
            continue

        if _is_primitive(value) and normalized in ALLOW_KEYS:
            output[key] = value
    return output


def sanitize_provider_payload(
    provider: str | None, raw: Any
) -> dict[str, Any] | None:
    """Return the allow-listed subset of ``raw``, or None when empty."""
    source = raw if isinstance(raw, dict) else {}
    sanitized = _sanitize_mapping(source)

    provider_name = (provider or "").strip().lower()
    if provider_name:
        sanitized["provider"] = provider_name

    return sanitized or None
