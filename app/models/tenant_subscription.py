from sqlalchemy import Column, String, DateTime, Enum
from enum import Enum as PyEnum
from datetime import datetime

from app.database import Base


class SubscriptionStatus(PyEnum):
    inactive = "inactive"
    active = "active"
    past_due = "past_due"
    cancelled = "cancelled"
    suspended = "suspended"
    trial = "trial"


class TenantSubscription(Base):
    """Billing state of one tenant. Written only by the subscription state machine."""

    __tablename__ = "tenant_subscriptions"

    tenant_id = Column(String, primary_key=True)
    subscription_status = Column(
        Enum(SubscriptionStatus, name="subscription_status"),
        default=SubscriptionStatus.inactive,
        nullable=False,
    )
    external_customer_ref = Column(String, index=True)
    external_subscription_ref = Column(String, index=True)
    current_period_end = Column(DateTime)
    billing_email = Column(String)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<TenantSubscription tenant={self.tenant_id} status={self.subscription_status}>"
