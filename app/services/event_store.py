"""Durable record of inbound provider events and the idempotency guard.

Idempotency is per provider event id: once a row is ``processed`` every later
delivery of the same id is a no-op. The row is created on first sight and
updated, never replaced, on later attempts; the unique constraint on
``provider_event_id`` keeps concurrent first deliveries from creating two rows.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.models.payment_event import InboundEvent, ProcessingStatus
from app.schemas.events import local_event_type
from app.services.signature import VerifiedEvent
from app.utils.timestamps import from_unix

logger = logging.getLogger(__name__)

# last_error is free text but bounded so a huge traceback can't bloat the row
MAX_ERROR_LENGTH = 2000

# a received row older than this was abandoned mid-dispatch
STALE_RECEIVED_AFTER = timedelta(minutes=10)


@dataclass(frozen=True)
class EventRecordHandle:
    id: uuid.UUID
    provider_event_id: str
    attempt_count: int


class EventStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, provider_event_id: str) -> Optional[InboundEvent]:
        result = await self.db.execute(
            select(InboundEvent).where(InboundEvent.provider_event_id == provider_event_id)
        )
        return result.scalar_one_or_none()

    async def has_been_processed(self, provider_event_id: str) -> bool:
        result = await self.db.execute(
            select(InboundEvent.id).where(
                InboundEvent.provider_event_id == provider_event_id,
                InboundEvent.processing_status == ProcessingStatus.processed,
            )
        )
        return result.first() is not None

    async def record_attempt(self, event: VerifiedEvent) -> EventRecordHandle:
        """Create the event row, or count another attempt on an existing one.

        Commits immediately so the attempt is durable even if dispatch fails.
        """
        handle = await self._increment_existing(event.event_id)
        if handle is not None:
            await self.db.commit()
            return handle

        row = InboundEvent(
            provider_event_id=event.event_id,
            event_type=local_event_type(event.event_type).value,
            provider_event_type=event.event_type,
            raw_payload=event.raw_body.decode("utf-8"),
            provider_created_at=from_unix(event.created),
            processing_status=ProcessingStatus.received,
            attempt_count=1,
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except IntegrityError:
            # a concurrent delivery inserted the same event id first
            await self.db.rollback()
            logger.info(f"Event {event.event_id} inserted concurrently, counting attempt instead")
            handle = await self._increment_existing(event.event_id)
            if handle is None:
                raise
            await self.db.commit()
            return handle
        return EventRecordHandle(id=row.id, provider_event_id=row.provider_event_id, attempt_count=1)

    async def _increment_existing(self, provider_event_id: str) -> Optional[EventRecordHandle]:
        result = await self.db.execute(
            select(InboundEvent.id, InboundEvent.attempt_count).where(
                InboundEvent.provider_event_id == provider_event_id
            )
        )
        existing = result.first()
        if existing is None:
            return None
        now = datetime.utcnow()
        await self.db.execute(
            update(InboundEvent)
            .where(InboundEvent.id == existing.id)
            .values(
                attempt_count=InboundEvent.attempt_count + 1,
                last_attempt_at=now,
                updated_at=now,
            )
        )
        return EventRecordHandle(
            id=existing.id,
            provider_event_id=provider_event_id,
            attempt_count=existing.attempt_count + 1,
        )

    async def mark_processed(self, handle: EventRecordHandle, tenant_id: Optional[str] = None) -> None:
        """Flag the event processed. Does not commit; the caller commits with the business writes."""
        now = datetime.utcnow()
        await self.db.execute(
            update(InboundEvent)
            .where(InboundEvent.id == handle.id)
            .values(
                processing_status=ProcessingStatus.processed,
                tenant_id=tenant_id,
                last_error=None,
                pending_payment_ref=None,
                processed_at=now,
                updated_at=now,
            )
        )

    async def mark_failed(
        self,
        handle: EventRecordHandle,
        error: str,
        tenant_id: Optional[str] = None,
        pending_payment_ref: Optional[str] = None,
    ) -> None:
        """Flag the event failed unless a concurrent delivery already processed it."""
        values = {
            "processing_status": ProcessingStatus.failed,
            "last_error": (error or "unknown error")[:MAX_ERROR_LENGTH],
            "pending_payment_ref": pending_payment_ref,
            "updated_at": datetime.utcnow(),
        }
        if tenant_id is not None:
            values["tenant_id"] = tenant_id
        await self.db.execute(
            update(InboundEvent)
            .where(
                InboundEvent.id == handle.id,
                InboundEvent.processing_status != ProcessingStatus.processed,
            )
            .values(**values)
        )

    async def pending_refunds(self, payment_ref: str) -> List[InboundEvent]:
        """Deferred refund events waiting for a charge on *payment_ref*."""
        result = await self.db.execute(
            select(InboundEvent)
            .where(
                InboundEvent.pending_payment_ref == payment_ref,
                InboundEvent.processing_status == ProcessingStatus.failed,
            )
            .order_by(InboundEvent.received_at)
        )
        return list(result.scalars().all())

    async def list_by_status(self, status: ProcessingStatus, limit: int = 100) -> List[InboundEvent]:
        result = await self.db.execute(
            select(InboundEvent)
            .where(InboundEvent.processing_status == status)
            .order_by(InboundEvent.received_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_failed(self, limit: int = 100) -> List[InboundEvent]:
        return await self.list_by_status(ProcessingStatus.failed, limit=limit)

    async def list_retryable(
        self, limit: int = 100, stale_after: timedelta = STALE_RECEIVED_AFTER
    ) -> List[InboundEvent]:
        """Failed events, plus events stuck in ``received`` longer than *stale_after*.

        A row stays ``received`` when the process died between recording the
        attempt and committing the outcome.
        """
        cutoff = datetime.utcnow() - stale_after
        result = await self.db.execute(
            select(InboundEvent)
            .where(
                or_(
                    InboundEvent.processing_status == ProcessingStatus.failed,
                    and_(
                        InboundEvent.processing_status == ProcessingStatus.received,
                        InboundEvent.last_attempt_at < cutoff,
                    ),
                )
            )
            .order_by(InboundEvent.received_at)
            .limit(limit)
        )
        return list(result.scalars().all())
