"""Webhook reconciler - applies Stripe notifications to local billing state

Each notification is treated as a full snapshot of the fields it covers, so
redelivery is idempotent. Handlers lock the subscription row they touch and
the version column rejects interleaved writers. A failed handler rolls back
and surfaces as HTTP 500 so Stripe redelivers the event.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import InvalidPayload, WebhookProcessingError
from app.core.metrics import webhook_events_counter
from app.core.otel import get_tracer
from app.db.helpers import (
    get_addon, get_addon_purchase_by_payment_intent, get_current_subscription,
    get_price_by_stripe_id, get_subscription_by_stripe_id, get_user_by_customer_id, resolve_user_ref
)
from app.models.addon import AddonPurchase
from app.models.stripe_event import StripeEvent
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.webhook_events import (
    CheckoutSessionObject, EventEnvelope, InvoiceObject, PaymentIntentObject,
    SubscriptionObject, parse_event_object
)
from app.services import email_service
from app.services.downgrade_service import apply_scheduled_downgrade
from app.services.processor_client import ProcessorClient, get_stripe_value
from app.services.plan_catalog import can_purchase_addon

logger = logging.getLogger(__name__)
billing_logger = logging.getLogger("billing")

# Notifications queued by handlers, sent only after the transaction commits
Notifications = List[Tuple[Callable[..., bool], Dict[str, Any]]]


def _to_datetime(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Some backends (SQLite) hand back naive datetimes; they are stored as UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# EVENT LOG (IDEMPOTENCY)
# ============================================================================

def log_stripe_event(event: EventEnvelope, payload: dict, db: Session) -> StripeEvent:
    stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event.id).first()
    if stripe_event:
        return stripe_event

    stripe_event = StripeEvent(
        event_id=event.id,
        event_type=event.type,
        payload=payload,
        processed=False,
        attempts=0
    )
    db.add(stripe_event)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event inserted it first
        db.rollback()
        return db.query(StripeEvent).filter(StripeEvent.event_id == event.id).one()
    db.refresh(stripe_event)
    return stripe_event


def _record_failure(event_id: str, error_message: str, db: Session) -> None:
    stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
    if stripe_event:
        stripe_event.attempts = (stripe_event.attempts or 0) + 1
        stripe_event.error_message = error_message[:2000]
        db.commit()


# ============================================================================
# ENTRY POINT
# ============================================================================

def process_webhook(
    payload: bytes,
    sig_header: Optional[str],
    db: Session,
    processor: ProcessorClient
) -> Dict[str, Any]:
    """Verify, parse and apply a Stripe notification.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Value of the ``stripe-signature`` header
        db: Database session
        processor: Payment processor client (signature secret, healing lookups)

    Returns:
        Dict with ``status`` in processed / ignored / already_processed

    Raises:
        InvalidSignature: Signature missing or invalid (nothing was parsed)
        WebhookNotConfigured: No webhook secret configured
        InvalidPayload: Body is not a well-formed event
        WebhookProcessingError: Handler failed; the event stays unprocessed
    """
    # Authenticate before anything looks at the body
    processor.verify_notification(payload, sig_header)

    try:
        event = EventEnvelope.model_validate_json(payload)
        obj = parse_event_object(event)
    except ValidationError as e:
        logger.error(f"Invalid webhook payload: {e}")
        webhook_events_counter.labels(event_type="unknown", result="invalid").inc()
        raise InvalidPayload()

    if obj is None:
        logger.info(f"Ignoring unhandled webhook event type {event.type} ({event.id})")
        webhook_events_counter.labels(event_type=event.type, result="ignored").inc()
        return {"status": "ignored", "event_id": event.id, "event_type": event.type}

    stripe_event = log_stripe_event(event, event.model_dump(), db)
    if stripe_event.processed:
        logger.info(f"Webhook event {event.id} already processed")
        webhook_events_counter.labels(event_type=event.type, result="duplicate").inc()
        return {"status": "already_processed", "event_id": event.id, "event_type": event.type}

    handler = EVENT_HANDLERS[event.type]
    notifications: Notifications = []
    with get_tracer().start_as_current_span(
        f"billing.webhook {event.type}", attributes={"stripe.event_id": event.id}
    ):
        try:
            handler(obj, db, processor, notifications, occurred_at=_to_datetime(event.created))
            stripe_event.processed = True
            stripe_event.processed_at = datetime.now(timezone.utc)
            stripe_event.attempts = (stripe_event.attempts or 0) + 1
            stripe_event.error_message = None
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Error processing webhook {event.id} ({event.type}): {e}", exc_info=True)
            _record_failure(event.id, str(e), db)
            webhook_events_counter.labels(event_type=event.type, result="failed").inc()
            raise WebhookProcessingError() from e

    webhook_events_counter.labels(event_type=event.type, result="processed").inc()
    logger.info(f"Successfully processed webhook event {event.id} of type {event.type}")

    for send, kwargs in notifications:
        send(**kwargs)

    return {"status": "processed", "event_id": event.id, "event_type": event.type}


# ============================================================================
# SUBSCRIPTION STATE
# ============================================================================

def _advance_period(record: Subscription, start: Optional[datetime], end: Optional[datetime]) -> None:
    """Write the period only if it does not move the recorded end backwards"""
    if end is None:
        return
    recorded_end = _as_utc(record.current_period_end)
    if recorded_end is not None and end < recorded_end:
        logger.info(
            f"Ignoring stale period for {record.stripe_subscription_id}: "
            f"{end.isoformat()} < recorded {recorded_end.isoformat()}"
        )
        return
    record.current_period_start = start
    record.current_period_end = end


def _apply_price(record: Subscription, price_id: int, observed_at: datetime) -> None:
    """Take the snapshot's price unless a later change already set it"""
    synced_at = _as_utc(record.price_synced_at)
    if synced_at is not None and observed_at < synced_at:
        if record.price_id != price_id:
            logger.info(
                f"Ignoring stale price for {record.stripe_subscription_id}: snapshot from "
                f"{observed_at.isoformat()} predates price change at {synced_at.isoformat()}"
            )
        return
    record.price_id = price_id
    record.price_synced_at = observed_at
    if record.scheduled_price_id == price_id:
        # The scheduled price reached the processor some other way (e.g. billing portal)
        record.scheduled_price_id = None
        record.scheduled_change_at = None


def _apply_subscription_snapshot(
    record: Subscription,
    sub: SubscriptionObject,
    price_id: int,
    occurred_at: Optional[datetime] = None
) -> None:
    """Copy a subscription snapshot onto the local row.

    ``occurred_at`` is the notification's creation time; snapshots fetched
    live from the processor pass None and count as current.
    """
    _apply_price(record, price_id, occurred_at or datetime.now(timezone.utc).replace(microsecond=0))
    record.status = sub.status
    record.stripe_customer_id = sub.customer or record.stripe_customer_id
    record.cancel_at_period_end = sub.cancel_at_period_end
    record.cancel_at = _to_datetime(sub.cancel_at)
    record.canceled_at = _to_datetime(sub.canceled_at)
    record.trial_start = _to_datetime(sub.trial_start)
    record.trial_end = _to_datetime(sub.trial_end)
    _advance_period(record, sub.period_start, sub.period_end)


def _resolve_subscription_user(
    sub: SubscriptionObject,
    db: Session,
    processor: ProcessorClient
) -> Optional[User]:
    """Find the local user for a subscription, linking the customer id on the way.

    ``subscription.created`` can arrive before ``checkout.session.completed``
    has stored the customer id, so fall back to the user reference in the
    subscription or customer metadata.
    """
    user = get_user_by_customer_id(db, sub.customer)
    if user:
        return user

    user_ref = sub.metadata.get("user_ref")
    if not user_ref and sub.customer:
        customer = processor.retrieve_customer(sub.customer)
        metadata = get_stripe_value(customer, "metadata", {}) or {}
        user_ref = get_stripe_value(metadata, "user_ref")

    user = resolve_user_ref(db, user_ref)
    if user and sub.customer and not user.stripe_customer_id:
        user.stripe_customer_id = sub.customer
        logger.info(f"Linked customer {sub.customer} to user {user.id} from metadata")
    return user


def upsert_subscription(
    sub: SubscriptionObject,
    db: Session,
    processor: ProcessorClient,
    user: Optional[User] = None,
    occurred_at: Optional[datetime] = None
) -> Optional[Subscription]:
    """Create or update the local subscription keyed by its Stripe id"""
    price = get_price_by_stripe_id(db, sub.price_ref)
    if not price:
        logger.error(f"Price not found for subscription {sub.id}: {sub.price_ref}")
        return None

    record = get_subscription_by_stripe_id(db, sub.id, for_update=True)
    if record:
        _apply_subscription_snapshot(record, sub, price.id, occurred_at)
        db.flush()
        return record

    user = user or _resolve_subscription_user(sub, db, processor)
    if not user:
        logger.error(f"User not found for customer {sub.customer} (subscription {sub.id})")
        return None

    record = Subscription(
        user_id=user.id,
        price_id=price.id,
        stripe_subscription_id=sub.id,
        status=sub.status,
        cancel_at_period_end=False,
    )
    _apply_subscription_snapshot(record, sub, price.id, occurred_at)
    db.add(record)
    db.flush()
    billing_logger.info(f"Subscription {sub.id} created for user {user.id} on {price.plan_id}")
    return record


def _heal_from_processor(subscription_ref: str, db: Session, processor: ProcessorClient) -> Optional[Subscription]:
    """Fetch a subscription unknown locally and upsert it"""
    logger.warning(f"Subscription {subscription_ref} unknown locally, fetching from processor")
    remote = processor.retrieve_subscription(subscription_ref)
    return upsert_subscription(SubscriptionObject.model_validate(dict(remote)), db, processor)


def _user_name(user: User) -> str:
    return user.first_name or "there"


# ============================================================================
# HANDLERS
# ============================================================================

def handle_checkout_completed(
    session: CheckoutSessionObject,
    db: Session,
    processor: ProcessorClient,
    notifications: Notifications,
    occurred_at: Optional[datetime] = None
) -> None:
    if session.mode and session.mode != "subscription":
        logger.info(f"Checkout session {session.id} is mode={session.mode}, nothing to reconcile")
        return

    user = resolve_user_ref(db, session.user_ref) or get_user_by_customer_id(db, session.customer)
    if not user:
        logger.error(f"No user for checkout session {session.id} (ref {session.user_ref})")
        return

    if session.customer and user.stripe_customer_id != session.customer:
        user.stripe_customer_id = session.customer
        logger.info(f"Linked customer {session.customer} to user {user.id}")

    if not session.subscription:
        return
    if get_subscription_by_stripe_id(db, session.subscription, for_update=True):
        # subscription.created got here first
        return

    remote = processor.retrieve_subscription(session.subscription)
    upsert_subscription(SubscriptionObject.model_validate(dict(remote)), db, processor, user=user)


def handle_subscription_upsert(
    sub: SubscriptionObject,
    db: Session,
    processor: ProcessorClient,
    notifications: Notifications,
    occurred_at: Optional[datetime] = None
) -> None:
    """subscription.created and subscription.updated"""
    upsert_subscription(sub, db, processor, occurred_at=occurred_at)


def handle_subscription_deleted(
    sub: SubscriptionObject,
    db: Session,
    processor: ProcessorClient,
    notifications: Notifications,
    occurred_at: Optional[datetime] = None
) -> None:
    record = get_subscription_by_stripe_id(db, sub.id, for_update=True)
    if not record:
        record = upsert_subscription(sub, db, processor, occurred_at=occurred_at)
        if not record:
            return

    record.status = "canceled"
    record.canceled_at = _to_datetime(sub.canceled_at) or datetime.now(timezone.utc)
    record.scheduled_price_id = None
    record.scheduled_change_at = None
    db.flush()
    billing_logger.info(f"Subscription {sub.id} canceled")

    notifications.append((email_service.send_subscription_canceled_email, {
        "email": record.user.email,
        "user_name": _user_name(record.user),
        "plan_name": record.price.plan.name,
        "end_date": record.current_period_end,
    }))


def handle_trial_will_end(
    sub: SubscriptionObject,
    db: Session,
    processor: ProcessorClient,
    notifications: Notifications,
    occurred_at: Optional[datetime] = None
) -> None:
    record = get_subscription_by_stripe_id(db, sub.id)
    if not record:
        logger.warning(f"Trial ending for unknown subscription {sub.id}")
        return
    notifications.append((email_service.send_trial_ending_email, {
        "email": record.user.email,
        "user_name": _user_name(record.user),
        "plan_name": record.price.plan.name,
        "trial_end": _to_datetime(sub.trial_end) or record.trial_end,
    }))


def _invoice_subscription(
    invoice: InvoiceObject,
    db: Session,
    processor: ProcessorClient
) -> Optional[Subscription]:
    subscription_ref = invoice.subscription_ref
    if not subscription_ref:
        logger.info(f"Invoice {invoice.id} is not related to a subscription, skipping")
        return None
    record = get_subscription_by_stripe_id(db, subscription_ref, for_update=True)
    if record is None:
        record = _heal_from_processor(subscription_ref, db, processor)
    return record


def handle_invoice_paid(
    invoice: InvoiceObject,
    db: Session,
    processor: ProcessorClient,
    notifications: Notifications,
    occurred_at: Optional[datetime] = None
) -> None:
    record = _invoice_subscription(invoice, db, processor)
    if not record:
        return

    period_start, period_end = invoice.service_period

    if record.scheduled_price_id is not None and period_start is not None:
        boundary = _as_utc(record.scheduled_change_at or record.current_period_end)
        if boundary is None or period_start >= boundary:
            apply_scheduled_downgrade(record, db, processor)

    _advance_period(record, period_start, period_end)
    if record.status not in ("canceled", "trialing"):
        record.status = "active"
    db.flush()

    notifications.append((email_service.send_payment_success_email, {
        "email": record.user.email,
        "user_name": _user_name(record.user),
        "plan_name": record.price.plan.name,
        "amount": email_service.format_amount(invoice.amount_paid, invoice.currency),
        "invoice_url": invoice.hosted_invoice_url,
    }))


def handle_invoice_payment_failed(
    invoice: InvoiceObject,
    db: Session,
    processor: ProcessorClient,
    notifications: Notifications,
    occurred_at: Optional[datetime] = None
) -> None:
    record = _invoice_subscription(invoice, db, processor)
    if not record:
        return

    if record.status != "canceled":
        record.status = "past_due"
        db.flush()
    billing_logger.warning(f"Payment failed for subscription {record.stripe_subscription_id}")

    notifications.append((email_service.send_payment_failed_email, {
        "email": record.user.email,
        "user_name": _user_name(record.user),
        "plan_name": record.price.plan.name,
        "amount": email_service.format_amount(invoice.amount_due, invoice.currency),
    }))


def handle_invoice_action_required(
    invoice: InvoiceObject,
    db: Session,
    processor: ProcessorClient,
    notifications: Notifications,
    occurred_at: Optional[datetime] = None
) -> None:
    record = _invoice_subscription(invoice, db, processor)
    if not record:
        return
    notifications.append((email_service.send_payment_action_required_email, {
        "email": record.user.email,
        "user_name": _user_name(record.user),
        "invoice_url": invoice.hosted_invoice_url,
    }))


def handle_payment_intent_succeeded(
    intent: PaymentIntentObject,
    db: Session,
    processor: ProcessorClient,
    notifications: Notifications,
    occurred_at: Optional[datetime] = None
) -> None:
    """Fulfill a one-time add-on purchase, once per payment intent"""
    addon_id = intent.metadata.get("addon_id")
    if not addon_id:
        logger.info(f"Payment intent {intent.id} is not for an add-on, skipping")
        return

    if get_addon_purchase_by_payment_intent(db, intent.id):
        logger.info(f"Add-on purchase for {intent.id} already recorded")
        return

    addon = get_addon(db, addon_id)
    if not addon:
        logger.error(f"Unknown add-on {addon_id} in payment intent {intent.id}")
        return

    user = get_user_by_customer_id(db, intent.customer) or resolve_user_ref(db, intent.metadata.get("user_ref"))
    if not user:
        logger.error(f"User not found for customer {intent.customer} (payment intent {intent.id})")
        return

    current = get_current_subscription(db, user.id)
    if current and not can_purchase_addon(addon_id, current.price.plan.level):
        # Payment already captured; record it and let support sort out eligibility
        logger.warning(f"User {user.id} bought {addon_id} below the required plan level")

    now = datetime.now(timezone.utc)
    db.add(AddonPurchase(
        user_id=user.id,
        addon_id=addon.id,
        stripe_payment_intent_id=intent.id,
        stripe_customer_id=intent.customer or user.stripe_customer_id or "",
        status="succeeded",
        amount=intent.amount,
        currency=intent.currency,
        provisioned_at=now,
        expires_at=now + timedelta(days=addon.duration_days) if addon.duration_days else None,
    ))
    db.flush()
    billing_logger.info(f"Add-on {addon_id} provisioned for user {user.id}")


EVENT_HANDLERS: Dict[str, Callable[..., None]] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.created": handle_subscription_upsert,
    "customer.subscription.updated": handle_subscription_upsert,
    "customer.subscription.deleted": handle_subscription_deleted,
    "customer.subscription.trial_will_end": handle_trial_will_end,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "invoice.payment_action_required": handle_invoice_action_required,
    "payment_intent.succeeded": handle_payment_intent_succeeded,
}
