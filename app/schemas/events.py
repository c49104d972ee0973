"""Typed views of the provider notifications the reconciliation engine acts on.

Each variant carries only the fields its handler needs and is validated when
the payload enters the system. The union is discriminated by the provider's
``type`` string; types that are not listed here are acknowledged without
action and never reach validation.
"""
from typing import Annotated, ClassVar, Literal, Optional, Union

from pydantic import (
    AliasPath,
    BaseModel,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from app.core.errors import MalformedEvent
from app.models.payment_event import EventType


class _ProviderObject(BaseModel):
    id: str
    customer: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_or_empty(cls, v):
        return v or {}

    @field_validator("customer", mode="before")
    @classmethod
    def _expanded_customer(cls, v):
        # expanded objects arrive as {"id": ...}
        if isinstance(v, dict):
            return v.get("id")
        return v


class _Currency(BaseModel):
    currency: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _iso_upper(cls, v):
        if v is None:
            return v
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"Invalid ISO 4217 currency: {v!r}")
        return v.upper()


class CustomerDetails(BaseModel):
    email: Optional[str] = None


class CheckoutSession(_ProviderObject, _Currency):
    subscription: Optional[str] = None
    payment_intent: Optional[str] = None
    amount_total: Optional[int] = None
    customer_details: Optional[CustomerDetails] = None


class Invoice(_ProviderObject, _Currency):
    subscription: Optional[str] = None
    payment_intent: Optional[str] = None
    amount_paid: Optional[int] = None
    amount_due: Optional[int] = None
    customer_email: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _subscription_from_parent(cls, data):
        # newer API versions move invoice.subscription under parent.subscription_details
        if isinstance(data, dict) and not data.get("subscription"):
            details = (data.get("parent") or {}).get("subscription_details") or {}
            if details.get("subscription"):
                data = {**data, "subscription": details["subscription"]}
        return data


class SubscriptionItem(BaseModel):
    current_period_end: Optional[int] = None


class SubscriptionItems(BaseModel):
    data: list[SubscriptionItem] = Field(default_factory=list)


class Subscription(_ProviderObject):
    status: str
    current_period_end: Optional[int] = None
    items: Optional[SubscriptionItems] = None

    @property
    def period_end(self) -> Optional[int]:
        """Period end, read from the first item on newer API versions."""
        if self.current_period_end is not None:
            return self.current_period_end
        if self.items and self.items.data:
            return self.items.data[0].current_period_end
        return None


class Charge(_ProviderObject, _Currency):
    payment_intent: Optional[str] = None
    amount: Optional[int] = None
    amount_refunded: int = 0


class _EventEnvelope(BaseModel):
    id: str
    created: Optional[int] = None
    livemode: bool = False


class CheckoutCompleted(_EventEnvelope):
    type: Literal["checkout.session.completed"]
    session: CheckoutSession = Field(validation_alias=AliasPath("data", "object"))

    kind: ClassVar[EventType] = EventType.checkout_completed


class InvoicePaid(_EventEnvelope):
    type: Literal["invoice.paid", "invoice.payment_succeeded"]
    invoice: Invoice = Field(validation_alias=AliasPath("data", "object"))

    kind: ClassVar[EventType] = EventType.invoice_paid


class InvoicePaymentFailed(_EventEnvelope):
    type: Literal["invoice.payment_failed"]
    invoice: Invoice = Field(validation_alias=AliasPath("data", "object"))

    kind: ClassVar[EventType] = EventType.invoice_payment_failed


class SubscriptionUpdated(_EventEnvelope):
    type: Literal["customer.subscription.updated"]
    subscription: Subscription = Field(validation_alias=AliasPath("data", "object"))

    kind: ClassVar[EventType] = EventType.subscription_updated


class SubscriptionDeleted(_EventEnvelope):
    type: Literal["customer.subscription.deleted"]
    subscription: Subscription = Field(validation_alias=AliasPath("data", "object"))

    kind: ClassVar[EventType] = EventType.subscription_deleted


class ChargeRefunded(_EventEnvelope):
    type: Literal["charge.refunded"]
    charge: Charge = Field(validation_alias=AliasPath("data", "object"))

    kind: ClassVar[EventType] = EventType.charge_refunded


ProviderEvent = Annotated[
    Union[
        CheckoutCompleted,
        InvoicePaid,
        InvoicePaymentFailed,
        SubscriptionUpdated,
        SubscriptionDeleted,
        ChargeRefunded,
    ],
    Field(discriminator="type"),
]

_provider_event_adapter = TypeAdapter(ProviderEvent)

EVENT_TYPE_MAP: dict[str, EventType] = {
    "checkout.session.completed": EventType.checkout_completed,
    "invoice.paid": EventType.invoice_paid,
    "invoice.payment_succeeded": EventType.invoice_paid,
    "invoice.payment_failed": EventType.invoice_payment_failed,
    "customer.subscription.updated": EventType.subscription_updated,
    "customer.subscription.deleted": EventType.subscription_deleted,
    "charge.refunded": EventType.charge_refunded,
}


def local_event_type(provider_type: str) -> EventType:
    return EVENT_TYPE_MAP.get(provider_type, EventType.unhandled)


def parse_provider_event(payload: dict):
    """Validate *payload* into its typed variant.

    Returns ``None`` for event types this service does not handle. Raises
    ``MalformedEvent`` when a handled type does not carry the fields its
    handler needs.
    """
    if payload.get("type") not in EVENT_TYPE_MAP:
        return None
    try:
        return _provider_event_adapter.validate_python(payload)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()
        )
        raise MalformedEvent(f"Invalid {payload.get('type')} payload: {errors}") from exc
