"""Stripe payload builders shared by the webhook and service tests"""
from datetime import datetime, timedelta, timezone

WEBHOOK_SECRET = "whsec_test_secret"

PERIOD_START = datetime(2026, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 2, 1, tzinfo=timezone.utc)


def ts(value: datetime) -> int:
    return int(value.timestamp())


def stripe_subscription(
    sub_id: str = "sub_123",
    price_id: str = "price_basic_month",
    status: str = "active",
    customer: str = "cus_123",
    period_start: datetime = PERIOD_START,
    period_end: datetime = PERIOD_END,
    **extra
) -> dict:
    """Stripe subscription object as delivered in webhooks"""
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": False,
        "cancel_at": None,
        "canceled_at": None,
        "current_period_start": ts(period_start),
        "current_period_end": ts(period_end),
        "trial_start": None,
        "trial_end": None,
        "metadata": {},
        "items": {"data": [{"id": "si_123", "price": {"id": price_id}}]},
    }
    obj.update(extra)
    return obj


def stripe_invoice(
    invoice_id: str = "in_123",
    sub_id: str = "sub_123",
    period_start: datetime = PERIOD_END,
    period_end: datetime = PERIOD_END + timedelta(days=28),
    amount_paid: int = 2900
) -> dict:
    """Renewal invoice whose subscription line covers [period_start, period_end]"""
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": "cus_123",
        "subscription": sub_id,
        "status": "paid",
        "amount_paid": amount_paid,
        "amount_due": amount_paid,
        "currency": "brl",
        # Invoice-level period of a renewal covers the period that just ended
        "period_start": ts(period_start - timedelta(days=31)),
        "period_end": ts(period_start),
        "hosted_invoice_url": "https://invoice.stripe.com/i/in_123",
        "lines": {"data": [{
            "id": "il_123",
            "type": "subscription",
            "period": {"start": ts(period_start), "end": ts(period_end)},
        }]},
    }
