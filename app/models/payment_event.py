from sqlalchemy import Column, String, DateTime, Enum, Integer, Text, Index
from sqlalchemy.dialects.postgresql import UUID
from enum import Enum as PyEnum
import uuid
from datetime import datetime

from app.database import Base


class EventType(PyEnum):
    """Local names for the provider notifications this service understands."""

    checkout_completed = "checkout_completed"
    invoice_paid = "invoice_paid"
    invoice_payment_failed = "invoice_payment_failed"
    subscription_updated = "subscription_updated"
    subscription_deleted = "subscription_deleted"
    charge_refunded = "charge_refunded"
    unhandled = "unhandled"


class ProcessingStatus(PyEnum):
    received = "received"
    processed = "processed"
    failed = "failed"


class InboundEvent(Base):
    """One row per provider notification, keyed by the provider's event id."""

    __tablename__ = "payment_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_event_id = Column(String, nullable=False, unique=True)
    event_type = Column(String, nullable=False)
    provider_event_type = Column(String, nullable=False)
    raw_payload = Column(Text, nullable=False)
    processing_status = Column(
        Enum(ProcessingStatus, name="processing_status"),
        default=ProcessingStatus.received,
        nullable=False,
    )
    tenant_id = Column(String)
    attempt_count = Column(Integer, default=1, nullable=False)
    last_error = Column(Text)
    # payment ref a deferred refund is waiting on
    pending_payment_ref = Column(String)

    provider_created_at = Column(DateTime)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_attempt_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_events_status", "processing_status"),
        Index("ix_payment_events_tenant", "tenant_id"),
        Index("ix_payment_events_pending_ref", "pending_payment_ref"),
    )

    def __repr__(self):
        return f"<InboundEvent {self.provider_event_id} type={self.event_type} status={self.processing_status}>"
