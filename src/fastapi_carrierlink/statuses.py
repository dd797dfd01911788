"""Shipment status ordering and webhook status derivation."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from fastapi_carrierlink.schemas import ShipmentStatus

STATUS_RANK: dict[ShipmentStatus, int] = {
    ShipmentStatus.DRAFT: 0,
    ShipmentStatus.BOOKING_IN_PROGRESS: 1,
    ShipmentStatus.BOOKED: 2,
    ShipmentStatus.PICKUP_SCHEDULED: 3,
    ShipmentStatus.IN_TRANSIT: 4,
    ShipmentStatus.OFD: 5,
    ShipmentStatus.FAILED: 6,
    ShipmentStatus.RTO_INITIATED: 7,
    ShipmentStatus.RTO_IN_TRANSIT: 8,
    ShipmentStatus.RTO_DELIVERED: 9,
    ShipmentStatus.DELIVERED: 10,
    ShipmentStatus.CANCELLED: 11,
}

_TOKEN_SEPARATORS = re.compile(r"[\s-]+")


def status_rank(status: ShipmentStatus | str) -> int:
    return STATUS_RANK[ShipmentStatus(status)]


def is_forward_transition(
    current: ShipmentStatus | str, target: ShipmentStatus | str
) -> bool:
    """Return True when ``target`` ranks strictly above ``current``."""
    return status_rank(target) > status_rank(current)


def statuses_below(target: ShipmentStatus | str) -> list[str]:
    """Statuses a shipment may still be in to advance to ``target``."""
    rank = status_rank(target)
    return [
        status.value
        for status, value in STATUS_RANK.items()
        if value < rank
    ]


def normalize_status_token(value: Any) -> str:
    if value is None:
        return ""
    text = str(value).strip().lower()
    return _TOKEN_SEPARATORS.sub("_", text)


def map_status_token(token: str) -> ShipmentStatus | None:
    """Map one normalized status token to a shipment status.

    Matching is substring based and ordered; the first rule that fires
    wins. ``undelivered`` never counts as delivered.
    """
    if not token:
        return None
    if "rto_delivered" in token:
        return ShipmentStatus.RTO_DELIVERED
    if "rto_in_transit" in token:
        return ShipmentStatus.RTO_IN_TRANSIT
    if "rto_initiated" in token or token == "rto":
        return ShipmentStatus.RTO_INITIATED
    if "cancel" in token or "void" in token:
        return ShipmentStatus.CANCELLED
    if (
        "delivered" in token
        and "undelivered" not in token
        and "out_for_delivery" not in token
    ):
        return ShipmentStatus.DELIVERED
    if "out_for_delivery" in token or token == "ofd":
        return ShipmentStatus.OFD
    if any(
        marker in token for marker in ("in_transit", "shipped", "manifest")
    ):
        return ShipmentStatus.IN_TRANSIT
    if "pickup" in token:
        return ShipmentStatus.PICKUP_SCHEDULED
    if any(
        marker in token
        for marker in ("booked", "shipment_created", "create")
    ) or token == "new":
        return ShipmentStatus.BOOKED
    if any(
        marker in token for marker in ("fail", "undeliver", "exception")
    ):
        return ShipmentStatus.FAILED
    return None


def derive_webhook_status(
    event_type: str | None, payload: Mapping[str, Any] | None
) -> ShipmentStatus | None:
    """Derive a status from an event type and its payload status fields."""
    payload = payload or {}
    candidates = [
        event_type,
        payload.get("status"),
        payload.get("status_code"),
        payload.get("raw_status"),
        payload.get("event_type"),
        payload.get("event"),
    ]
    for candidate in candidates:
        status = map_status_token(normalize_status_token(candidate))
        if status is not None:
            return status
    return None
