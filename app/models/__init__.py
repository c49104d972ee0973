from . import payment_event, tenant_subscription, ledger_entry, audit_record, processing_failure
from .payment_event import InboundEvent, EventType, ProcessingStatus
from .tenant_subscription import TenantSubscription, SubscriptionStatus
from .ledger_entry import LedgerEntry, LedgerStatus
from .audit_record import AuditRecord
from .processing_failure import ProcessingFailure

__all__ = [
    "payment_event",
    "tenant_subscription",
    "ledger_entry",
    "audit_record",
    "processing_failure",
    "InboundEvent",
    "EventType",
    "ProcessingStatus",
    "TenantSubscription",
    "SubscriptionStatus",
    "LedgerEntry",
    "LedgerStatus",
    "AuditRecord",
    "ProcessingFailure",
]
