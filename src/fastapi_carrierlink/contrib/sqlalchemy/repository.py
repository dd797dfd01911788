"""SQLAlchemy shipment repository with webhook reconciliation."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fastapi_carrierlink.contrib.sqlalchemy.models import (
    ShipmentRecord,
    ShippingEventRecord,
    WebhookBufferRecord,
    utcnow,
)
from fastapi_carrierlink.contrib.sqlalchemy.webhook_buffer import (
    SQLAlchemyWebhookBuffer,
)
from fastapi_carrierlink.exceptions import ShippingPersistenceError
from fastapi_carrierlink.sanitize import sanitize_provider_payload
from fastapi_carrierlink.schemas import ShipmentLabelStatus, ShipmentStatus
from fastapi_carrierlink.statuses import (
    derive_webhook_status,
    statuses_below,
)

logger = logging.getLogger(__name__)

EVENT_DUPLICATE = "SHIPPING_EVENT_DUPLICATE"


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _replay_counts() -> dict[str, int]:
    return {
        "scanned": 0,
        "processed": 0,
        "buffered": 0,
        "deduped": 0,
        "updated": 0,
    }


class SQLAlchemyShipmentRepository:
    """Shipment, event and webhook store backed by async sessions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        webhook_buffer: SQLAlchemyWebhookBuffer | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.webhook_buffer = webhook_buffer or SQLAlchemyWebhookBuffer(
            session_factory
        )

    # Shipments

    async def get_shipment_by_id(
        self, shipment_id: str
    ) -> ShipmentRecord | None:
        async with self.session_factory() as session:
            return await session.get(ShipmentRecord, shipment_id)

    async def get_shipment_by_internal_reference(
        self, internal_reference: str
    ) -> ShipmentRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ShipmentRecord)
                .where(
                    ShipmentRecord.internal_reference == internal_reference
                )
                .order_by(ShipmentRecord.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def create_shipment(
        self,
        *,
        order_id: str,
        provider: str,
        internal_reference: str,
        status: ShipmentStatus = ShipmentStatus.DRAFT,
        provider_order_id: str | None = None,
        provider_shipment_id: str | None = None,
        provider_awb: str | None = None,
        service_level: str | None = None,
        courier_code: str | None = None,
        rate_amount: Decimal | float | None = None,
        rate_currency: str | None = None,
        label_url: str | None = None,
        label_generated_at: datetime | None = None,
        label_expires_at: datetime | None = None,
        label_status: ShipmentLabelStatus = ShipmentLabelStatus.MISSING,
        replacement_of_shipment_id: str | None = None,
        replay_buffered_events: bool = True,
    ) -> ShipmentRecord:
        order_id = _text(order_id)
        provider = (_text(provider) or "").lower()
        internal_reference = _text(internal_reference)
        if not order_id or not provider or not internal_reference:
            raise ShippingPersistenceError(
                "SHIPPING_SHIPMENT_INVALID_INPUT",
                "order_id, provider and internal_reference are required.",
                details={
                    "order_id": order_id,
                    "provider": provider,
                    "internal_reference": internal_reference,
                },
            )

        now = utcnow()
        shipment = ShipmentRecord(
            order_id=order_id,
            provider=provider,
            internal_reference=internal_reference,
            status=ShipmentStatus(status).value,
            is_active=True,
            provider_order_id=_text(provider_order_id),
            provider_shipment_id=_text(provider_shipment_id),
            provider_awb=_text(provider_awb),
            service_level=service_level,
            courier_code=courier_code,
            rate_amount=rate_amount,
            rate_currency=rate_currency,
            label_url=label_url,
            label_generated_at=label_generated_at,
            label_expires_at=label_expires_at,
            label_status=ShipmentLabelStatus(label_status).value,
            replacement_of_shipment_id=replacement_of_shipment_id,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.session_factory() as session:
                session.add(shipment)
                await session.commit()
                await session.refresh(shipment)
        except IntegrityError as exc:
            raise await self._conflict_error(
                order_id, provider, internal_reference
            ) from exc

        if replay_buffered_events and (
            shipment.provider_shipment_id or shipment.provider_awb
        ):
            await self.replay_buffered_events_for_shipment(shipment.id)
        return shipment

    async def _conflict_error(
        self, order_id: str, provider: str, internal_reference: str
    ) -> ShippingPersistenceError:
        existing = await self.get_shipment_by_internal_reference(
            internal_reference
        )
        if existing is not None:
            return ShippingPersistenceError(
                "SHIPPING_INTERNAL_REFERENCE_CONFLICT",
                "A shipment with this internal reference already exists.",
                details={
                    "internal_reference": internal_reference,
                    "shipment_id": existing.id,
                },
            )
        return ShippingPersistenceError(
            "SHIPPING_ACTIVE_SHIPMENT_CONFLICT",
            "An active shipment already exists for this order and provider.",
            details={"order_id": order_id, "provider": provider},
        )

    async def list_active_shipments(
        self, order_id: str, provider: str | None = None
    ) -> list[ShipmentRecord]:
        stmt = select(ShipmentRecord).where(
            ShipmentRecord.order_id == order_id,
            ShipmentRecord.is_active.is_(True),
        )
        if provider:
            stmt = stmt.where(ShipmentRecord.provider == provider.lower())
        async with self.session_factory() as session:
            result = await session.execute(
                stmt.order_by(ShipmentRecord.created_at.desc())
            )
            return list(result.scalars().all())

    async def list_active_shipments_by_statuses(
        self,
        statuses: list[ShipmentStatus | str],
        provider: str | None = None,
        limit: int = 100,
    ) -> list[ShipmentRecord]:
        values = [ShipmentStatus(status).value for status in statuses]
        if not values:
            return []
        stmt = select(ShipmentRecord).where(
            ShipmentRecord.is_active.is_(True),
            ShipmentRecord.status.in_(values),
        )
        if provider:
            stmt = stmt.where(ShipmentRecord.provider == provider.lower())
        async with self.session_factory() as session:
            result = await session.execute(
                stmt.order_by(ShipmentRecord.updated_at.asc()).limit(limit)
            )
            return list(result.scalars().all())

    async def list_stuck_booking_in_progress(
        self, older_than: datetime, limit: int = 100
    ) -> list[ShipmentRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ShipmentRecord)
                .where(
                    ShipmentRecord.is_active.is_(True),
                    ShipmentRecord.status
                    == ShipmentStatus.BOOKING_IN_PROGRESS.value,
                    ShipmentRecord.created_at <= older_than,
                )
                .order_by(ShipmentRecord.created_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def touch_shipment_updated_at(
        self, shipment_id: str
    ) -> ShipmentRecord | None:
        async with self.session_factory() as session:
            shipment = await session.get(ShipmentRecord, shipment_id)
            if shipment is None:
                return None
            shipment.updated_at = utcnow()
            await session.commit()
            await session.refresh(shipment)
            return shipment

    async def mark_shipment_inactive(
        self, shipment_id: str
    ) -> ShipmentRecord | None:
        async with self.session_factory() as session:
            shipment = await session.get(ShipmentRecord, shipment_id)
            if shipment is None or not shipment.is_active:
                return None
            shipment.is_active = False
            shipment.updated_at = utcnow()
            await session.commit()
            await session.refresh(shipment)
            return shipment

    async def rebook_shipment(
        self,
        previous_shipment_id: str,
        *,
        internal_reference: str,
        status: ShipmentStatus = ShipmentStatus.DRAFT,
        provider: str | None = None,
    ) -> tuple[ShipmentRecord, ShipmentRecord]:
        """Deactivate a shipment and create its linked replacement."""
        previous_shipment_id = _text(previous_shipment_id)
        internal_reference = _text(internal_reference)
        if not previous_shipment_id or not internal_reference:
            raise ShippingPersistenceError(
                "SHIPPING_REBOOK_INVALID_INPUT",
                "previous_shipment_id and internal_reference are required.",
                details={"previous_shipment_id": previous_shipment_id},
            )

        now = utcnow()
        async with self.session_factory() as session:
            previous = await session.get(ShipmentRecord, previous_shipment_id)
            if previous is None:
                raise ShippingPersistenceError(
                    "SHIPPING_REBOOK_PREVIOUS_NOT_FOUND",
                    "Shipment to rebook was not found.",
                    details={"previous_shipment_id": previous_shipment_id},
                )
            order_id = previous.order_id
            replacement_provider = (provider or previous.provider).lower()
            previous.is_active = False
            previous.updated_at = now
            # One active row per (order_id, provider).
            await session.flush()

            replacement = ShipmentRecord(
                order_id=order_id,
                provider=replacement_provider,
                internal_reference=internal_reference,
                status=ShipmentStatus(status).value,
                is_active=True,
                replacement_of_shipment_id=previous.id,
                label_status=ShipmentLabelStatus.MISSING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(replacement)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise await self._conflict_error(
                    order_id,
                    replacement_provider,
                    internal_reference,
                ) from exc
            await session.refresh(previous)
            await session.refresh(replacement)
            return previous, replacement

    async def update_shipment_status_monotonic(
        self, shipment_id: str, status: ShipmentStatus | str
    ) -> tuple[ShipmentRecord | None, bool]:
        """Advance status with a compare-and-set.

        Returns the current shipment and whether this call moved it. A
        lost race (or a backwards target) leaves the row untouched.
        """
        target = ShipmentStatus(status)
        async with self.session_factory() as session:
            result = await session.execute(
                update(ShipmentRecord)
                .where(
                    ShipmentRecord.id == shipment_id,
                    ShipmentRecord.status.in_(statuses_below(target)),
                )
                .values(status=target.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            updated = result.rowcount > 0
            shipment = await session.get(
                ShipmentRecord, shipment_id, populate_existing=True
            )
        if updated:
            logger.info("Shipment %s advanced to %s", shipment_id, target)
        return shipment, updated

    async def mark_shipment_booked_from_provider(
        self,
        shipment_id: str,
        *,
        provider_order_id: str | None = None,
        provider_shipment_id: str | None = None,
        provider_awb: str | None = None,
        status: ShipmentStatus | None = None,
        label_url: str | None = None,
        label_generated_at: datetime | None = None,
        label_expires_at: datetime | None = None,
        label_last_fetched_at: datetime | None = None,
        label_status: ShipmentLabelStatus | str | None = None,
        replay_buffered_events: bool = True,
    ) -> ShipmentRecord | None:
        """Record provider references and label data of a booking.

        Only non-empty values overwrite stored ones; the status only
        advances. Buffered webhook events matching the stored refs are
        then replayed onto the shipment.
        """
        now = utcnow()
        async with self.session_factory() as session:
            shipment = await session.get(ShipmentRecord, shipment_id)
            if shipment is None:
                return None

            refs = {
                "provider_order_id": _text(provider_order_id),
                "provider_shipment_id": _text(provider_shipment_id),
                "provider_awb": _text(provider_awb),
            }
            for key, value in refs.items():
                if value:
                    setattr(shipment, key, value)

            label_url = _text(label_url)
            if label_url:
                shipment.label_url = label_url
                shipment.label_generated_at = label_generated_at or now
                shipment.label_last_fetched_at = label_last_fetched_at or now
            if label_expires_at is not None:
                shipment.label_expires_at = label_expires_at
            if label_status is not None:
                shipment.label_status = ShipmentLabelStatus(label_status).value
            else:
                shipment.label_status = (
                    ShipmentLabelStatus.AVAILABLE.value
                    if shipment.label_url
                    else ShipmentLabelStatus.MISSING.value
                )
            shipment.updated_at = now
            await session.commit()

        shipment, _ = await self.update_shipment_status_monotonic(
            shipment_id, status or ShipmentStatus.BOOKED
        )
        if replay_buffered_events:
            counts = await self.replay_buffered_events_for_shipment(
                shipment_id
            )
            if counts["updated"]:
                shipment = await self.get_shipment_by_id(shipment_id)
        return shipment

    async def update_shipment_label(
        self,
        shipment_id: str,
        *,
        label_status: ShipmentLabelStatus | str,
        label_url: str | None = None,
        label_generated_at: datetime | None = None,
        label_expires_at: datetime | None = None,
        label_last_fetched_at: datetime | None = None,
    ) -> ShipmentRecord | None:
        async with self.session_factory() as session:
            shipment = await session.get(ShipmentRecord, shipment_id)
            if shipment is None:
                return None
            if label_url:
                shipment.label_url = label_url
            if label_generated_at is not None:
                shipment.label_generated_at = label_generated_at
            if label_expires_at is not None:
                shipment.label_expires_at = label_expires_at
            if label_last_fetched_at is not None:
                shipment.label_last_fetched_at = label_last_fetched_at
            shipment.label_status = ShipmentLabelStatus(label_status).value
            shipment.updated_at = utcnow()
            await session.commit()
            await session.refresh(shipment)
            return shipment

    async def find_shipment_by_refs(
        self,
        *,
        provider: str,
        provider_shipment_id: str | None = None,
        provider_awb: str | None = None,
        provider_order_id: str | None = None,
        internal_reference: str | None = None,
    ) -> ShipmentRecord | None:
        """Match a shipment by provider refs in priority order.

        Active and newest shipments win. The internal reference is
        unique across providers, so that lookup ignores ``provider``.
        """
        provider = provider.strip().lower()
        lookups = [
            (ShipmentRecord.provider_shipment_id, provider_shipment_id, True),
            (ShipmentRecord.provider_awb, provider_awb, True),
            (ShipmentRecord.provider_order_id, provider_order_id, True),
            (ShipmentRecord.internal_reference, internal_reference, False),
        ]
        async with self.session_factory() as session:
            for column, value, scoped in lookups:
                value = _text(value)
                if not value:
                    continue
                stmt = select(ShipmentRecord).where(column == value)
                if scoped:
                    stmt = stmt.where(ShipmentRecord.provider == provider)
                result = await session.execute(
                    stmt.order_by(
                        ShipmentRecord.is_active.desc(),
                        ShipmentRecord.created_at.desc(),
                    ).limit(1)
                )
                shipment = result.scalar_one_or_none()
                if shipment is not None:
                    return shipment
        return None

    # Events

    async def append_event(
        self,
        *,
        shipment_id: str,
        provider: str,
        provider_event_id: str,
        status: ShipmentStatus | str,
        raw_status: str | None = None,
        payload: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> ShippingEventRecord:
        provider = (_text(provider) or "").lower()
        provider_event_id = _text(provider_event_id)
        if not shipment_id or not provider or not provider_event_id:
            raise ShippingPersistenceError(
                "SHIPPING_EVENT_INVALID_INPUT",
                "shipment_id, provider and provider_event_id are required.",
                details={
                    "shipment_id": shipment_id,
                    "provider": provider,
                },
            )

        duplicate = ShippingPersistenceError(
            EVENT_DUPLICATE,
            "Shipping event was already recorded.",
            details={
                "provider": provider,
                "provider_event_id": provider_event_id,
            },
        )
        async with self.session_factory() as session:
            existing = await session.execute(
                select(ShippingEventRecord.id).where(
                    ShippingEventRecord.provider == provider,
                    ShippingEventRecord.provider_event_id
                    == provider_event_id,
                )
            )
            if existing.first() is not None:
                raise duplicate

            now = utcnow()
            event = ShippingEventRecord(
                shipment_id=shipment_id,
                provider=provider,
                provider_event_id=provider_event_id,
                status=ShipmentStatus(status).value,
                raw_status=raw_status,
                raw_payload_sanitized=sanitize_provider_payload(
                    provider, payload
                ),
                occurred_at=occurred_at or now,
                created_at=now,
            )
            session.add(event)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise duplicate from exc
            await session.refresh(event)
            return event

    async def list_events(
        self, shipment_id: str
    ) -> list[ShippingEventRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ShippingEventRecord)
                .where(ShippingEventRecord.shipment_id == shipment_id)
                .order_by(ShippingEventRecord.created_at.asc())
            )
            return list(result.scalars().all())

    async def _apply_event(
        self,
        shipment: ShipmentRecord,
        *,
        provider: str,
        provider_event_id: str,
        event_type: str,
        status: ShipmentStatus | None,
        payload: dict[str, Any] | None,
    ) -> dict[str, Any]:
        target = status or derive_webhook_status(event_type, payload)
        event_status = target or ShipmentStatus(shipment.status)

        deduped = False
        try:
            await self.append_event(
                shipment_id=shipment.id,
                provider=provider,
                provider_event_id=provider_event_id,
                status=event_status,
                raw_status=event_type,
                payload=payload,
            )
        except ShippingPersistenceError as exc:
            if exc.code != EVENT_DUPLICATE:
                raise
            deduped = True

        status_updated = False
        if target is not None:
            _, status_updated = await self.update_shipment_status_monotonic(
                shipment.id, target
            )

        return {
            "processed": not deduped,
            "deduped": deduped,
            "buffered": False,
            "matched": True,
            "shipment_id": shipment.id,
            "status_updated": status_updated,
        }

    async def process_shipping_webhook_event(
        self,
        *,
        provider: str,
        provider_event_id: str,
        event_type: str,
        provider_shipment_id: str | None = None,
        provider_awb: str | None = None,
        provider_order_id: str | None = None,
        internal_reference: str | None = None,
        status: ShipmentStatus | None = None,
        payload_sanitized: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Apply a webhook event to its shipment, or buffer it."""
        provider = (_text(provider) or "").lower()
        provider_event_id = _text(provider_event_id)
        event_type = _text(event_type)
        if not provider or not provider_event_id or not event_type:
            raise ShippingPersistenceError(
                "SHIPPING_WEBHOOK_INVALID_INPUT",
                "provider, provider_event_id and event_type are required.",
                details={
                    "provider": provider,
                    "provider_event_id": provider_event_id,
                },
            )

        payload = sanitize_provider_payload(provider, payload_sanitized)
        shipment = await self.find_shipment_by_refs(
            provider=provider,
            provider_shipment_id=provider_shipment_id,
            provider_awb=provider_awb,
            provider_order_id=provider_order_id,
            internal_reference=internal_reference,
        )
        if shipment is None:
            buffered = await self.webhook_buffer.buffer_webhook_event(
                provider=provider,
                provider_event_id=provider_event_id,
                event_type=event_type,
                provider_shipment_id=provider_shipment_id,
                provider_awb=provider_awb,
                provider_order_id=provider_order_id,
                internal_reference=internal_reference,
                payload_sanitized=payload,
            )
            return {
                "processed": False,
                "deduped": buffered["already_buffered"],
                "buffered": True,
                "matched": False,
                "shipment_id": None,
                "status_updated": False,
            }

        return await self._apply_event(
            shipment,
            provider=provider,
            provider_event_id=provider_event_id,
            event_type=event_type,
            status=status,
            payload=payload,
        )

    # Buffered replay

    async def _replay_record(
        self, shipment: ShipmentRecord, record: WebhookBufferRecord
    ) -> dict[str, Any]:
        result = await self._apply_event(
            shipment,
            provider=record.provider,
            provider_event_id=record.provider_event_id,
            event_type=record.event_type,
            status=None,
            payload=record.payload_sanitized,
        )
        await self.webhook_buffer.mark_processed(record.id)
        return result

    async def replay_buffered_events_for_shipment(
        self, shipment_id: str
    ) -> dict[str, int]:
        counts = _replay_counts()
        shipment = await self.get_shipment_by_id(shipment_id)
        if shipment is None:
            return counts

        records = await self.webhook_buffer.list_pending_for_refs(
            provider=shipment.provider,
            provider_shipment_id=shipment.provider_shipment_id,
            provider_awb=shipment.provider_awb,
            provider_order_id=shipment.provider_order_id,
            internal_reference=shipment.internal_reference,
        )
        for record in records:
            counts["scanned"] += 1
            result = await self._replay_record(shipment, record)
            counts["processed"] += 1
            counts["deduped"] += int(result["deduped"])
            counts["updated"] += int(result["status_updated"])

        if counts["scanned"]:
            logger.info(
                "Replayed %d buffered events for shipment %s",
                counts["processed"],
                shipment_id,
            )
        return counts

    async def replay_buffered_events(
        self,
        limit: int = 100,
        now: datetime | None = None,
        max_attempts: int | None = None,
    ) -> dict[str, int]:
        """Retry due buffered events against current shipments.

        Only rows whose backoff has elapsed are fetched, so unmatched
        events move to the back of the queue after every attempt. A row
        that fails ``max_attempts`` sweeps is marked exhausted and left
        to scoped replay on booking.
        """
        counts = _replay_counts()
        now = now or utcnow()
        records = await self.webhook_buffer.list_due(now=now, limit=limit)
        for record in records:
            counts["scanned"] += 1
            payload = record.payload_sanitized or {}
            shipment = await self.find_shipment_by_refs(
                provider=record.provider,
                provider_shipment_id=record.provider_shipment_id,
                provider_awb=record.provider_awb,
                provider_order_id=(
                    record.provider_order_id
                    or _text(payload.get("provider_order_id"))
                ),
                internal_reference=(
                    record.internal_reference
                    or _text(payload.get("internal_reference"))
                    or _text(payload.get("order_id"))
                ),
            )
            if shipment is None:
                await self.webhook_buffer.increment_retry(
                    record.id, now=now, max_attempts=max_attempts
                )
                counts["buffered"] += 1
                continue

            result = await self._replay_record(shipment, record)
            counts["processed"] += 1
            counts["deduped"] += int(result["deduped"])
            counts["updated"] += int(result["status_updated"])
        return counts

    # Retention

    async def purge_expired_sanitized_payloads(
        self, ttl_days: int = 90, now: datetime | None = None
    ) -> dict[str, Any]:
        """Null sanitized payloads older than the TTL.

        Event rows and buffered webhooks keep their ids, refs and
        timestamps.
        """
        now = now or datetime.now(tz=UTC)
        cutoff = now - timedelta(days=ttl_days)
        async with self.session_factory() as session:
            events = await session.execute(
                update(ShippingEventRecord)
                .where(
                    ShippingEventRecord.created_at < cutoff,
                    ShippingEventRecord.raw_payload_sanitized.is_not(None),
                )
                .values(raw_payload_sanitized=None)
                .execution_options(synchronize_session=False)
            )
            buffered = await session.execute(
                update(WebhookBufferRecord)
                .where(
                    WebhookBufferRecord.received_at < cutoff,
                    WebhookBufferRecord.payload_sanitized.is_not(None),
                )
                .values(payload_sanitized=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return {
            "ttl_days": ttl_days,
            "cutoff_at": cutoff,
            "scrubbed_count": events.rowcount,
            "buffer_scrubbed_count": buffered.rowcount,
        }
