from sqlalchemy import Column, String, DateTime, Text, Index
from sqlalchemy.dialects.postgresql import UUID
import uuid
from datetime import datetime

from app.database import Base, JSONType


class AuditRecord(Base):
    """Append-only audit log. Shared with other writers; rows are never updated."""

    __tablename__ = "audit_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    action = Column(String, nullable=False)
    resource_type = Column(String, nullable=False)
    resource_id = Column(String)
    tenant_id = Column(String)
    outcome = Column(String, nullable=False)
    error = Column(Text)
    meta = Column(JSONType, default=dict, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_records_resource", "resource_type", "resource_id"),
        Index("ix_audit_records_tenant_created", "tenant_id", "created_at"),
    )
