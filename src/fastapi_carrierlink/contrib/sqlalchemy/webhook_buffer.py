"""SQLAlchemy store for unmatched webhook events."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fastapi_carrierlink.contrib.sqlalchemy.models import (
    WebhookBufferRecord,
    utcnow,
)
from fastapi_carrierlink.exceptions import ShippingPersistenceError
from fastapi_carrierlink.retry import replay_backoff

logger = logging.getLogger(__name__)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class SQLAlchemyWebhookBuffer:
    """Durable buffer keyed by (provider, provider_event_id)."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        self.session_factory = session_factory

    async def get_by_event(
        self, provider: str, provider_event_id: str
    ) -> WebhookBufferRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookBufferRecord).where(
                    WebhookBufferRecord.provider == provider,
                    WebhookBufferRecord.provider_event_id == provider_event_id,
                )
            )
            return result.scalar_one_or_none()

    async def buffer_webhook_event(
        self,
        *,
        provider: str,
        provider_event_id: str,
        event_type: str,
        provider_shipment_id: str | None = None,
        provider_awb: str | None = None,
        provider_order_id: str | None = None,
        internal_reference: str | None = None,
        payload_sanitized: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Insert an event unless it is already buffered."""
        provider = (_text(provider) or "").lower()
        provider_event_id = _text(provider_event_id) or ""
        event_type = _text(event_type) or ""
        if not provider or not provider_event_id or not event_type:
            raise ShippingPersistenceError(
                "SHIPPING_WEBHOOK_BUFFER_INVALID_INPUT",
                "provider, provider_event_id and event_type are required.",
                details={
                    "provider": provider,
                    "provider_event_id": provider_event_id,
                },
            )

        existing = await self.get_by_event(provider, provider_event_id)
        if existing is not None:
            return {
                "buffered": True,
                "already_buffered": True,
                "record": existing,
            }

        now = utcnow()
        record = WebhookBufferRecord(
            provider=provider,
            provider_event_id=provider_event_id,
            provider_shipment_id=_text(provider_shipment_id),
            provider_awb=_text(provider_awb),
            provider_order_id=_text(provider_order_id),
            internal_reference=_text(internal_reference),
            event_type=event_type,
            payload_sanitized=payload_sanitized,
            received_at=now,
            retry_count=0,
            next_attempt_at=now,
        )
        try:
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
        except IntegrityError:
            existing = await self.get_by_event(provider, provider_event_id)
            if existing is None:
                raise
            return {
                "buffered": True,
                "already_buffered": True,
                "record": existing,
            }

        logger.info(
            "Buffered unmatched webhook %s/%s",
            provider,
            provider_event_id,
        )
        return {"buffered": True, "already_buffered": False, "record": record}

    async def list_pending(
        self, limit: int = 100
    ) -> list[WebhookBufferRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookBufferRecord)
                .where(WebhookBufferRecord.processed_at.is_(None))
                .order_by(WebhookBufferRecord.received_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_due(
        self, *, now: datetime | None = None, limit: int = 100
    ) -> list[WebhookBufferRecord]:
        """Pending, non-exhausted events whose next attempt is due."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookBufferRecord)
                .where(
                    WebhookBufferRecord.processed_at.is_(None),
                    WebhookBufferRecord.exhausted_at.is_(None),
                    WebhookBufferRecord.next_attempt_at <= now,
                )
                .order_by(
                    WebhookBufferRecord.next_attempt_at.asc(),
                    WebhookBufferRecord.received_at.asc(),
                )
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_pending_for_refs(
        self,
        *,
        provider: str,
        provider_shipment_id: str | None = None,
        provider_awb: str | None = None,
        provider_order_id: str | None = None,
        internal_reference: str | None = None,
    ) -> list[WebhookBufferRecord]:
        """Pending events for a shipment, oldest first."""
        conditions = []
        if _text(provider_shipment_id):
            conditions.append(
                WebhookBufferRecord.provider_shipment_id
                == _text(provider_shipment_id)
            )
        if _text(provider_awb):
            conditions.append(
                WebhookBufferRecord.provider_awb == _text(provider_awb)
            )
        if _text(provider_order_id):
            conditions.append(
                WebhookBufferRecord.provider_order_id
                == _text(provider_order_id)
            )
        if _text(internal_reference):
            conditions.append(
                WebhookBufferRecord.internal_reference
                == _text(internal_reference)
            )
        if not conditions:
            return []

        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookBufferRecord)
                .where(
                    WebhookBufferRecord.provider == provider.lower(),
                    WebhookBufferRecord.processed_at.is_(None),
                    or_(*conditions),
                )
                .order_by(WebhookBufferRecord.received_at.asc())
            )
            return list(result.scalars().unique().all())

    async def mark_processed(self, record_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(WebhookBufferRecord)
                .where(
                    WebhookBufferRecord.id == record_id,
                    WebhookBufferRecord.processed_at.is_(None),
                )
                .values(processed_at=utcnow())
            )
            await session.commit()

    async def increment_retry(
        self,
        record_id: str,
        *,
        now: datetime | None = None,
        max_attempts: int | None = None,
    ) -> WebhookBufferRecord | None:
        """Count a failed match and schedule the next attempt.

        The row is marked exhausted once ``max_attempts`` is reached; it
        then only replays when a booking with matching refs is stored.
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            record = await session.get(WebhookBufferRecord, record_id)
            if record is None:
                return None
            record.retry_count += 1
            record.next_attempt_at = now + replay_backoff(record.retry_count)
            if max_attempts is not None and record.retry_count >= max_attempts:
                record.exhausted_at = now
                logger.warning(
                    "Buffered webhook %s/%s exhausted after %d attempts",
                    record.provider,
                    record.provider_event_id,
                    record.retry_count,
                )
            await session.commit()
            await session.refresh(record)
            return record
