from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from app.models.ledger_entry import LedgerStatus
from app.models.payment_event import ProcessingStatus
from app.models.tenant_subscription import SubscriptionStatus


class LedgerEntryOut(BaseModel):
    external_payment_ref: str
    tenant_id: str
    external_customer_ref: Optional[str] = None
    amount_minor_units: int
    currency: str
    status: LedgerStatus
    description: Optional[str] = None
    refunded_amount_minor_units: Optional[int] = None
    occurred_at: datetime
    refunded_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TenantSubscriptionOut(BaseModel):
    tenant_id: str
    subscription_status: SubscriptionStatus
    external_customer_ref: Optional[str] = None
    external_subscription_ref: Optional[str] = None
    current_period_end: Optional[datetime] = None

    class Config:
        from_attributes = True


class CurrencyTotalsOut(BaseModel):
    charged: int
    failed: int
    refunded: int
    net: int
    entries: int


class ReconciliationReport(BaseModel):
    tenant_id: str
    subscription: Optional[TenantSubscriptionOut] = None
    totals: dict[str, CurrencyTotalsOut]
    entries: list[LedgerEntryOut]


class InboundEventOut(BaseModel):
    provider_event_id: str
    event_type: str
    provider_event_type: str
    processing_status: ProcessingStatus
    tenant_id: Optional[str] = None
    attempt_count: int
    last_error: Optional[str] = None
    received_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True
