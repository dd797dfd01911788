"""SQLAlchemy shipment, event and webhook buffer models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    true,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fastapi_carrierlink.schemas import ShipmentLabelStatus, ShipmentStatus


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""


class ShipmentRecord(Base):
    """One booking attempt of an order with a provider."""

    __tablename__ = "carrierlink_shipments"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: new_id("ship")
    )
    order_id: Mapped[str] = mapped_column(String(128), index=True)
    provider: Mapped[str] = mapped_column(String(64))
    internal_reference: Mapped[str] = mapped_column(
        String(128), unique=True
    )
    provider_order_id: Mapped[str | None] = mapped_column(
        String(128), index=True
    )
    provider_shipment_id: Mapped[str | None] = mapped_column(
        String(128), index=True
    )
    provider_awb: Mapped[str | None] = mapped_column(String(128), index=True)
    status: Mapped[str] = mapped_column(
        String(32), default=ShipmentStatus.DRAFT.value
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    replacement_of_shipment_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("carrierlink_shipments.id")
    )
    service_level: Mapped[str | None] = mapped_column(String(64))
    courier_code: Mapped[str | None] = mapped_column(String(64))
    rate_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    rate_currency: Mapped[str | None] = mapped_column(String(3))
    label_url: Mapped[str | None] = mapped_column(String(1024))
    label_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    label_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    label_last_fetched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    label_status: Mapped[str] = mapped_column(
        String(32), default=ShipmentLabelStatus.MISSING.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )


Index(
    "uq_carrierlink_shipments_active_order_provider",
    ShipmentRecord.order_id,
    ShipmentRecord.provider,
    unique=True,
    postgresql_where=ShipmentRecord.is_active == true(),
    sqlite_where=ShipmentRecord.is_active == true(),
)


class ShippingEventRecord(Base):
    """Append-only status event of a shipment."""

    __tablename__ = "carrierlink_shipping_events"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "provider_event_id",
            name="uq_carrierlink_events_provider_event",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: new_id("sev")
    )
    shipment_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("carrierlink_shipments.id"), index=True
    )
    provider: Mapped[str] = mapped_column(String(64))
    provider_event_id: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(32))
    raw_status: Mapped[str | None] = mapped_column(String(255))
    raw_payload_sanitized: Mapped[dict | None] = mapped_column(
        JSON(none_as_null=True)
    )
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )


class WebhookBufferRecord(Base):
    """Webhook event that arrived before its shipment could be matched."""

    __tablename__ = "carrierlink_webhook_buffer"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "provider_event_id",
            name="uq_carrierlink_buffer_provider_event",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: new_id("swb")
    )
    provider: Mapped[str] = mapped_column(String(64))
    provider_event_id: Mapped[str] = mapped_column(String(255))
    provider_shipment_id: Mapped[str | None] = mapped_column(
        String(128), index=True
    )
    provider_awb: Mapped[str | None] = mapped_column(String(128), index=True)
    provider_order_id: Mapped[str | None] = mapped_column(String(128))
    internal_reference: Mapped[str | None] = mapped_column(String(128))
    event_type: Mapped[str] = mapped_column(String(128))
    payload_sanitized: Mapped[dict | None] = mapped_column(
        JSON(none_as_null=True)
    )
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )
    exhausted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
