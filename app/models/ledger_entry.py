from sqlalchemy import Column, String, DateTime, Enum, BigInteger, Index
from sqlalchemy.dialects.postgresql import UUID
from enum import Enum as PyEnum
import uuid
from datetime import datetime

from app.database import Base


class LedgerStatus(PyEnum):
    """Outcome of a money movement."""

    succeeded = "succeeded"
    failed = "failed"
    refunded = "refunded"


class LedgerEntry(Base):
    """One money movement, keyed by the provider payment reference. Never deleted."""

    __tablename__ = "ledger_entries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_payment_ref = Column(String, nullable=False, unique=True)
    tenant_id = Column(String, nullable=False)
    external_customer_ref = Column(String)
    amount_minor_units = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(Enum(LedgerStatus, name="ledger_status"), nullable=False)
    description = Column(String)
    refunded_amount_minor_units = Column(BigInteger)

    source_event_id = Column(String)
    occurred_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    refunded_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_ledger_entries_tenant_occurred", "tenant_id", "occurred_at"),
        Index("ix_ledger_entries_status", "status"),
    )
