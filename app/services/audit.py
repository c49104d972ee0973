import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_record import AuditRecord

logger = logging.getLogger(__name__)

RESOURCE_PAYMENT_EVENT = "payment_event"


class AuditSink:
    """Append-only writer for the shared audit log."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def write(
        self,
        action: str,
        resource_type: str,
        outcome: str,
        resource_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditRecord:
        record = AuditRecord(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            tenant_id=tenant_id,
            outcome=outcome,
            error=error,
            meta=metadata or {},
        )
        self.db.add(record)
        await self.db.flush()
        return record

    async def record_event_outcome(
        self,
        provider_event_id: str,
        provider_event_type: str,
        outcome: str,
        tenant_id: Optional[str] = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditRecord:
        meta = {"event_type": provider_event_type, "tenant_id": tenant_id, "status": outcome, "error": error}
        meta.update(metadata or {})
        if error:
            logger.warning(f"Audit: {provider_event_id} ({provider_event_type}) {outcome}: {error}")
        return await self.write(
            action=f"stripe_webhook.{provider_event_type}",
            resource_type=RESOURCE_PAYMENT_EVENT,
            resource_id=provider_event_id,
            tenant_id=tenant_id,
            outcome=outcome,
            error=error,
            metadata=meta,
        )
