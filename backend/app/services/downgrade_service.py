"""Scheduled downgrade applier

Downgrades are recorded as ``scheduled_price_id`` and only reach the
processor once the paid period is over. This runs from invoice-paid handling
inside the reconciler's transaction; it never commits on its own.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.core.errors import ProcessorError
from app.core.metrics import scheduled_downgrades_counter
from app.models.plan import Price
from app.models.subscription import Subscription
from app.services.processor_client import NO_PRORATION, ProcessorClient

logger = logging.getLogger(__name__)
billing_logger = logging.getLogger("billing")


def apply_scheduled_downgrade(subscription: Subscription, db: Session, processor: ProcessorClient) -> bool:
    """Swap the subscription to its scheduled price without proration.

    Args:
        subscription: Subscription with ``scheduled_price_id`` set
        db: Database session (caller commits)
        processor: Payment processor client

    Returns:
        True if the downgrade was applied, False if it was skipped or failed.
        On failure ``scheduled_price_id`` stays set so the next period
        boundary retries.
    """
    if subscription.scheduled_price_id is None:
        return False

    scheduled_price = db.query(Price).filter(Price.id == subscription.scheduled_price_id).first()
    if not scheduled_price:
        logger.error(
            f"Scheduled price {subscription.scheduled_price_id} for subscription "
            f"{subscription.id} no longer exists"
        )
        scheduled_downgrades_counter.labels(status="failed").inc()
        return False

    if not subscription.stripe_subscription_id:
        logger.error(f"Subscription {subscription.id} has no processor reference, cannot downgrade")
        scheduled_downgrades_counter.labels(status="failed").inc()
        return False

    # Notifications triggered by this update are created after this instant
    changed_at = datetime.now(timezone.utc).replace(microsecond=0)
    try:
        processor.update_subscription_price(
            subscription.stripe_subscription_id,
            scheduled_price.stripe_price_id,
            proration_behavior=NO_PRORATION,
        )
    except ProcessorError as e:
        logger.error(
            f"Failed to apply scheduled downgrade for {subscription.stripe_subscription_id}: {e}; "
            f"will retry at the next period boundary"
        )
        scheduled_downgrades_counter.labels(status="failed").inc()
        return False

    previous_price_id = subscription.price_id
    subscription.price = scheduled_price
    subscription.price_synced_at = changed_at
    subscription.scheduled_price_id = None
    subscription.scheduled_change_at = None
    db.flush()

    scheduled_downgrades_counter.labels(status="applied").inc()
    billing_logger.info(
        f"Scheduled downgrade applied - Subscription: {subscription.stripe_subscription_id}, "
        f"price {previous_price_id} -> {scheduled_price.id} ({scheduled_price.plan_id})"
    )
    return True
