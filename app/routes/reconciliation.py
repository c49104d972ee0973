from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import require_admin_token
from app.database import get_db
from app.models.payment_event import ProcessingStatus
from app.models.tenant_subscription import TenantSubscription
from app.schemas.reconciliation import (
    InboundEventOut,
    LedgerEntryOut,
    ReconciliationReport,
    TenantSubscriptionOut,
)
from app.services.event_store import EventStore
from app.services.ledger import Ledger

router = APIRouter(
    prefix="/billing",
    tags=["Billing Reconciliation"],
    dependencies=[Depends(require_admin_token)],
)


@router.get("/reconciliation/{tenant_id}", response_model=ReconciliationReport)
async def tenant_reconciliation(tenant_id: str, db: AsyncSession = Depends(get_db)):
    """Ledger totals and entries for one tenant, with its current billing state."""
    ledger = Ledger(db)
    subscription = await db.get(TenantSubscription, tenant_id)
    entries = await ledger.entries_for_tenant(tenant_id)
    if subscription is None and not entries:
        raise HTTPException(status_code=404, detail="Unknown tenant")

    summary = await ledger.summarize(tenant_id)
    return ReconciliationReport(
        tenant_id=tenant_id,
        subscription=TenantSubscriptionOut.model_validate(subscription) if subscription else None,
        totals=summary.as_dict()["currencies"],
        entries=[LedgerEntryOut.model_validate(e) for e in entries],
    )


@router.get("/events", response_model=list[InboundEventOut])
async def list_events(
    status: ProcessingStatus = ProcessingStatus.failed,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
):
    if limit < 1 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    events = await EventStore(db).list_by_status(status, limit=limit)
    return [InboundEventOut.model_validate(e) for e in events]
