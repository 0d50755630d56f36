"""Pydantic models for Stripe webhook payloads

Only the fields the reconciler reads are declared; everything else in the
payload is ignored. ``parse_event_object`` maps an event type to its object
model so handlers receive typed data instead of raw dicts.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field


def _to_datetime(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class EventData(StripeModel):
    object: Dict


class EventEnvelope(StripeModel):
    """Top-level notification: id, type and the raw object"""
    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: EventData


# ===== SUBSCRIPTIONS =====

class PriceRef(StripeModel):
    id: str


class SubscriptionItem(StripeModel):
    id: Optional[str] = None
    price: PriceRef
    # Newer API versions report the billing period per item
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItemList(StripeModel):
    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(StripeModel):
    id: str
    customer: Optional[str] = None
    status: str
    cancel_at_period_end: bool = False
    cancel_at: Optional[int] = None
    canceled_at: Optional[int] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    items: SubscriptionItemList = Field(default_factory=SubscriptionItemList)
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def first_item(self) -> Optional[SubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def price_ref(self) -> Optional[str]:
        item = self.first_item
        return item.price.id if item else None

    @property
    def period_start(self) -> Optional[datetime]:
        value = self.current_period_start
        if value is None and self.first_item:
            value = self.first_item.current_period_start
        return _to_datetime(value)

    @property
    def period_end(self) -> Optional[datetime]:
        value = self.current_period_end
        if value is None and self.first_item:
            value = self.first_item.current_period_end
        return _to_datetime(value)


# ===== CHECKOUT =====

class CheckoutSessionObject(StripeModel):
    id: str
    mode: Optional[str] = None
    status: Optional[str] = None
    customer: Optional[str] = None
    customer_email: Optional[str] = None
    subscription: Optional[str] = None
    client_reference_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def user_ref(self) -> Optional[str]:
        return self.client_reference_id or self.metadata.get("user_ref")


# ===== INVOICES =====

class Period(StripeModel):
    start: Optional[int] = None
    end: Optional[int] = None


class LineItemDetails(StripeModel):
    proration: bool = False


class InvoiceLineParent(StripeModel):
    type: Optional[str] = None
    subscription_item_details: Optional[LineItemDetails] = None


class InvoiceLine(StripeModel):
    id: Optional[str] = None
    # Older API versions: "subscription" or "invoiceitem"; newer ones use ``parent``
    type: Optional[str] = None
    proration: bool = False
    period: Optional[Period] = None
    parent: Optional[InvoiceLineParent] = None

    @property
    def is_proration(self) -> bool:
        """Prorations and one-off items do not describe the billed period"""
        if self.proration or self.type == "invoiceitem":
            return True
        if self.parent is None:
            return False
        if self.parent.type == "invoice_item_details":
            return True
        details = self.parent.subscription_item_details
        return bool(details and details.proration)


class InvoiceLineList(StripeModel):
    data: List[InvoiceLine] = Field(default_factory=list)


class SubscriptionDetails(StripeModel):
    subscription: Optional[str] = None


class InvoiceParent(StripeModel):
    subscription_details: Optional[SubscriptionDetails] = None


class InvoiceObject(StripeModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[InvoiceParent] = None
    status: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: Optional[str] = None
    period_start: Optional[int] = None
    period_end: Optional[int] = None
    hosted_invoice_url: Optional[str] = None
    lines: InvoiceLineList = Field(default_factory=InvoiceLineList)

    @property
    def subscription_ref(self) -> Optional[str]:
        """Subscription reference (moved under ``parent`` in newer API versions)"""
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None

    @property
    def service_period(self) -> Tuple[Optional[datetime], Optional[datetime]]:
        """Billing period the invoice pays for.

        The invoice-level period of a renewal invoice covers the period that
        just ended, so the line periods take precedence. Leftover prorations
        can be listed before the renewal line; the latest-ending regular line
        wins.
        """
        dated = [line for line in self.lines.data if line.period and line.period.start and line.period.end]
        regular = [line for line in dated if not line.is_proration] or dated
        if regular:
            line = max(regular, key=lambda item: item.period.end)
            return _to_datetime(line.period.start), _to_datetime(line.period.end)
        return _to_datetime(self.period_start), _to_datetime(self.period_end)


# ===== PAYMENT INTENTS =====

class PaymentIntentObject(StripeModel):
    id: str
    customer: Optional[str] = None
    amount: int
    currency: str
    status: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


EVENT_OBJECT_MODELS: Dict[str, Type[StripeModel]] = {
    "checkout.session.completed": CheckoutSessionObject,
    "customer.subscription.created": SubscriptionObject,
    "customer.subscription.updated": SubscriptionObject,
    "customer.subscription.deleted": SubscriptionObject,
    "customer.subscription.trial_will_end": SubscriptionObject,
    "invoice.paid": InvoiceObject,
    "invoice.payment_failed": InvoiceObject,
    "invoice.payment_action_required": InvoiceObject,
    "payment_intent.succeeded": PaymentIntentObject,
}


def parse_event_object(event: EventEnvelope) -> Optional[StripeModel]:
    """Parse ``data.object`` for a known event type, None for unknown types.

    Raises:
        pydantic.ValidationError: If a known event carries a malformed object
    """
    model = EVENT_OBJECT_MODELS.get(event.type)
    if model is None:
        return None
    return model.model_validate(event.data.object)
