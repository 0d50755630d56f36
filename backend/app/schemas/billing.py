"""Pydantic schemas for plans, checkout and subscriptions"""
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class CheckoutRequest(BaseModel):
    price_id: str  # Stripe price reference
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class SubscriptionView(BaseModel):
    id: Optional[int] = None
    status: str
    plan_id: str
    plan_name: str
    plan_level: int
    price_id: Optional[str] = None
    interval: Optional[str] = None
    amount: int = 0
    currency: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancel_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    scheduled_plan_id: Optional[str] = None
    scheduled_price_id: Optional[str] = None
    features: List[dict] = Field(default_factory=list)


# ===== PLAN CHANGE OUTCOMES =====

class CheckoutOutcome(BaseModel):
    """No subscription yet - the user must finish a hosted checkout"""
    type: Literal["checkout"] = "checkout"
    url: str
    session_id: str


class AppliedOutcome(BaseModel):
    """Upgrade or interval change applied immediately with proration"""
    type: Literal["upgrade", "interval_change"]
    subscription: SubscriptionView


class DowngradeScheduledOutcome(BaseModel):
    """Downgrade recorded, applied when the current period ends"""
    type: Literal["downgrade_scheduled"] = "downgrade_scheduled"
    effective_date: Optional[datetime] = None
    subscription: SubscriptionView


PlanChangeOutcome = Annotated[
    Union[CheckoutOutcome, AppliedOutcome, DowngradeScheduledOutcome],
    Field(discriminator="type"),
]


# ===== CATALOG & INVOICES =====

class PriceView(BaseModel):
    id: str
    interval: str
    interval_count: int = 1
    amount: int
    currency: str


class PlanView(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    level: int
    popular: bool = False
    features: List[dict] = Field(default_factory=list)
    prices: List[PriceView] = Field(default_factory=list)


class InvoiceLineView(BaseModel):
    description: Optional[str] = None
    amount: Optional[int] = None
    quantity: Optional[int] = None


class InvoiceView(BaseModel):
    id: str
    number: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    amount_paid: Optional[int] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    created: Optional[datetime] = None
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None
    lines: List[InvoiceLineView] = Field(default_factory=list)


class InvoiceList(BaseModel):
    invoices: List[InvoiceView]
    has_more: bool = False
