"""Plan change service - checkout, upgrades, scheduled downgrades and self-service

Every decision that reads and then writes a user's subscription runs under a
per-user advisory lock so two concurrent requests cannot both act on the same
snapshot. Nothing is persisted unless the processor call it depends on
succeeded.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings, DEFAULT_SUCCESS_URL, DEFAULT_CANCEL_URL, BILLING_RETURN_URL
from app.core.errors import (
    InvalidPrice, MissingCustomer, NoActiveSubscription, NoScheduledChange,
    PlanChangeInProgress, SamePlan, SubscriptionCanceling, UserNotFound
)
from app.core.metrics import plan_changes_counter
from app.core.otel import get_tracer
from app.db.helpers import (
    get_active_price_by_stripe_id, get_current_subscription, get_user,
    list_public_plans as query_public_plans
)
from app.db.redis import LockUnavailable, advisory_lock
from app.models.subscription import Subscription, CHANGEABLE_STATUSES, ENTITLED_STATUSES
from app.models.user import User
from app.schemas.billing import (
    AppliedOutcome, CheckoutOutcome, DowngradeScheduledOutcome, PlanView, PriceView,
    SubscriptionView
)
from app.services.plan_catalog import (
    DOWNGRADE, FREE_PLAN_ID, SAME, classify_plan_change, get_plan_config, get_plan_features
)
from app.services.processor_client import (
    PRORATE, ProcessorClient, get_stripe_value, timestamp_to_datetime
)

logger = logging.getLogger(__name__)
billing_logger = logging.getLogger("billing")


# ============================================================================
# HELPERS
# ============================================================================

@contextmanager
def _plan_change_lock(user_id: int, operation: str):
    """Per-user advisory lock, traced as one span per operation"""
    with get_tracer().start_as_current_span(f"billing.{operation}", attributes={"billing.user_id": user_id}):
        try:
            with advisory_lock(f"plan_change:{user_id}", timeout=settings.plan_change_lock_ttl):
                yield
        except LockUnavailable:
            plan_changes_counter.labels(outcome="conflict").inc()
            logger.warning(f"Plan change already in progress for user {user_id}")
            raise PlanChangeInProgress()


def _commit(db: Session) -> None:
    """Commit, mapping a concurrent row update to a retryable conflict"""
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning(f"Subscription changed concurrently, aborting write: {e}")
        raise PlanChangeInProgress()


def _require_user(db: Session, user_id: int) -> User:
    user = get_user(db, user_id)
    if not user:
        raise UserNotFound()
    return user


def build_subscription_view(subscription: Subscription) -> SubscriptionView:
    price = subscription.price
    plan = price.plan
    scheduled = subscription.scheduled_price
    return SubscriptionView(
        id=subscription.id,
        status=subscription.status,
        plan_id=plan.id,
        plan_name=plan.name,
        plan_level=plan.level,
        price_id=price.stripe_price_id,
        interval=price.interval,
        amount=price.amount,
        currency=price.currency,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        cancel_at=subscription.cancel_at,
        trial_end=subscription.trial_end,
        scheduled_plan_id=scheduled.plan_id if scheduled else None,
        scheduled_price_id=scheduled.stripe_price_id if scheduled else None,
        features=get_plan_features(plan.id),
    )


def free_plan_view() -> SubscriptionView:
    """Placeholder returned to users without a paid subscription"""
    plan = get_plan_config(FREE_PLAN_ID)
    return SubscriptionView(
        status="free",
        plan_id=plan["id"],
        plan_name=plan["name"],
        plan_level=plan["level"],
        features=plan["features"],
    )


# ============================================================================
# PLAN CHANGE
# ============================================================================

def request_plan_change(
    db: Session,
    user_id: int,
    price_ref: str,
    processor: ProcessorClient,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None
):
    """Move a user to the requested price.

    Args:
        db: Database session
        user_id: Local user id
        price_ref: Stripe price reference of the requested price
        processor: Payment processor client
        success_url: Checkout redirect on success (first subscription only)
        cancel_url: Checkout redirect on abandon (first subscription only)

    Returns:
        CheckoutOutcome, AppliedOutcome or DowngradeScheduledOutcome

    Raises:
        UserNotFound, InvalidPrice, SubscriptionCanceling, SamePlan,
        PlanChangeInProgress, ProcessorUnavailable, ProcessorRejected
    """
    user = _require_user(db, user_id)

    price = get_active_price_by_stripe_id(db, price_ref)
    if not price:
        plan_changes_counter.labels(outcome="invalid_price").inc()
        raise InvalidPrice()

    with _plan_change_lock(user.id, "plan_change"):
        current = get_current_subscription(db, user.id, statuses=CHANGEABLE_STATUSES)

        if current is None:
            return _start_checkout(
                db, user, price.stripe_price_id, processor,
                success_url or DEFAULT_SUCCESS_URL, cancel_url or DEFAULT_CANCEL_URL
            )

        if current.cancel_at_period_end:
            plan_changes_counter.labels(outcome="rejected").inc()
            raise SubscriptionCanceling()

        current_plan = current.price.plan
        change = classify_plan_change(
            current_plan.level, price.plan.level, same_price=(current.price_id == price.id)
        )

        if change == SAME:
            plan_changes_counter.labels(outcome="rejected").inc()
            raise SamePlan(current_plan=current_plan.name)

        if change == DOWNGRADE:
            current.scheduled_price_id = price.id
            current.scheduled_change_at = current.current_period_end
            _commit(db)
            db.refresh(current)
            plan_changes_counter.labels(outcome="downgrade_scheduled").inc()
            billing_logger.info(
                f"Downgrade scheduled - User: {user.id}, {current_plan.id} -> {price.plan_id}, "
                f"effective {current.current_period_end}"
            )
            return DowngradeScheduledOutcome(
                effective_date=current.current_period_end,
                subscription=build_subscription_view(current),
            )

        if not current.stripe_subscription_id:
            raise NoActiveSubscription("Subscription is not linked to the payment system")

        # Upgrade or interval change: processor first, then local state
        stripe_subscription_id = current.stripe_subscription_id
        changed_at = datetime.now(timezone.utc).replace(microsecond=0)
        updated = processor.update_subscription_price(
            stripe_subscription_id, price.stripe_price_id, proration_behavior=PRORATE
        )

        current.price_id = price.id
        current.price_synced_at = changed_at
        current.scheduled_price_id = None
        current.scheduled_change_at = None
        new_status = get_stripe_value(updated, "status")
        if new_status:
            current.status = new_status
        try:
            _commit(db)
        except PlanChangeInProgress:
            # The processor already holds the new price; subscription.updated reconciles it
            logger.error(
                f"Processor updated {stripe_subscription_id} but the local write was stale"
            )
            raise
        db.refresh(current)

        plan_changes_counter.labels(outcome=change).inc()
        billing_logger.info(
            f"Plan change applied - User: {user.id}, Type: {change}, "
            f"{current_plan.id} -> {price.plan_id}"
        )
        return AppliedOutcome(type=change, subscription=build_subscription_view(current))


def _start_checkout(
    db: Session,
    user: User,
    price_ref: str,
    processor: ProcessorClient,
    success_url: str,
    cancel_url: str
) -> CheckoutOutcome:
    customer_id = user.stripe_customer_id
    if not customer_id:
        customer_id = processor.get_or_create_customer(
            user.email, user.external_auth_id, name=user.first_name
        )
        user.stripe_customer_id = customer_id
        db.commit()

    # A notification may have created the subscription while we talked to the processor
    if get_current_subscription(db, user.id, statuses=CHANGEABLE_STATUSES) is not None:
        plan_changes_counter.labels(outcome="conflict").inc()
        raise PlanChangeInProgress("A subscription was just created. Refresh and try again.")

    session = processor.create_checkout_session(
        price_ref=price_ref,
        user_ref=user.external_auth_id,
        success_url=success_url,
        cancel_url=cancel_url,
        customer_id=customer_id,
    )
    plan_changes_counter.labels(outcome="checkout").inc()
    logger.info(f"Checkout session {session['id']} created for user {user.id}")
    return CheckoutOutcome(url=session["url"], session_id=session["id"])


# ============================================================================
# SELF-SERVICE
# ============================================================================

def get_subscription_view(db: Session, user_id: int) -> SubscriptionView:
    """Current entitled subscription, or the free plan when there is none"""
    _require_user(db, user_id)
    subscription = get_current_subscription(db, user_id, statuses=ENTITLED_STATUSES)
    if not subscription:
        return free_plan_view()
    return build_subscription_view(subscription)


def _require_linked_subscription(db: Session, user_id: int) -> Subscription:
    subscription = get_current_subscription(db, user_id, statuses=ENTITLED_STATUSES)
    if not subscription or not subscription.stripe_subscription_id:
        raise NoActiveSubscription()
    return subscription


def cancel_subscription_at_period_end(db: Session, user_id: int, processor: ProcessorClient) -> SubscriptionView:
    """Stop renewal; access continues until the end of the paid period"""
    _require_user(db, user_id)
    with _plan_change_lock(user_id, "cancel"):
        subscription = _require_linked_subscription(db, user_id)
        if subscription.cancel_at_period_end:
            return build_subscription_view(subscription)

        updated = processor.set_cancel_at_period_end(subscription.stripe_subscription_id, True)
        subscription.cancel_at_period_end = True
        subscription.cancel_at = (
            timestamp_to_datetime(get_stripe_value(updated, "cancel_at"))
            or subscription.current_period_end
        )
        _commit(db)
        db.refresh(subscription)

    billing_logger.info(f"Subscription {subscription.stripe_subscription_id} set to cancel at period end")
    return build_subscription_view(subscription)


def reactivate_subscription(db: Session, user_id: int, processor: ProcessorClient) -> SubscriptionView:
    """Undo a pending cancellation"""
    _require_user(db, user_id)
    with _plan_change_lock(user_id, "reactivate"):
        subscription = _require_linked_subscription(db, user_id)
        if not subscription.cancel_at_period_end:
            return build_subscription_view(subscription)

        processor.set_cancel_at_period_end(subscription.stripe_subscription_id, False)
        subscription.cancel_at_period_end = False
        subscription.cancel_at = None
        _commit(db)
        db.refresh(subscription)

    billing_logger.info(f"Subscription {subscription.stripe_subscription_id} reactivated")
    return build_subscription_view(subscription)


def cancel_scheduled_downgrade(db: Session, user_id: int) -> SubscriptionView:
    """Drop a pending downgrade; the processor never knew about it"""
    _require_user(db, user_id)
    with _plan_change_lock(user_id, "cancel_scheduled_change"):
        subscription = get_current_subscription(db, user_id, statuses=ENTITLED_STATUSES)
        if not subscription:
            raise NoActiveSubscription()
        if subscription.scheduled_price_id is None:
            raise NoScheduledChange()

        subscription.scheduled_price_id = None
        subscription.scheduled_change_at = None
        _commit(db)
        db.refresh(subscription)

    billing_logger.info(f"Scheduled downgrade canceled for user {user_id}")
    return build_subscription_view(subscription)


def create_portal_session(
    db: Session,
    user_id: int,
    processor: ProcessorClient,
    return_url: Optional[str] = None
) -> str:
    user = _require_user(db, user_id)
    if not user.stripe_customer_id:
        raise MissingCustomer()
    return processor.create_portal_session(user.stripe_customer_id, return_url or BILLING_RETURN_URL)


def list_invoices(
    db: Session,
    user_id: int,
    processor: ProcessorClient,
    limit: int = 10,
    starting_after: Optional[str] = None
) -> Dict:
    user = _require_user(db, user_id)
    if not user.stripe_customer_id:
        return {"invoices": [], "has_more": False}
    return processor.list_invoices(user.stripe_customer_id, limit=limit, starting_after=starting_after)


def list_public_plans(db: Session) -> List[PlanView]:
    """Active public plans with their active prices and catalog features"""
    plans = []
    for plan in query_public_plans(db):
        config = get_plan_config(plan.id) or {}
        plans.append(PlanView(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            level=plan.level,
            popular=config.get("popular", False),
            features=config.get("features", []),
            prices=[
                PriceView(
                    id=price.stripe_price_id,
                    interval=price.interval,
                    interval_count=price.interval_count,
                    amount=price.amount,
                    currency=price.currency,
                )
                for price in plan.prices if price.is_active
            ],
        ))
    return plans
