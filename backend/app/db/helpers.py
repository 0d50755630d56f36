"""Billing repository - query helpers over the billing models

Services take a ``db: Session`` and never build queries inline for these
lookups. Writes stay in the services so each one owns its transaction.
"""
import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session, selectinload

from app.models.addon import Addon, AddonPurchase
from app.models.plan import Plan, Price
from app.models.subscription import Subscription, ENTITLED_STATUSES
from app.models.user import User

logger = logging.getLogger(__name__)


# ===== USERS =====

def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_customer_id(db: Session, stripe_customer_id: str) -> Optional[User]:
    if not stripe_customer_id:
        return None
    return db.query(User).filter(User.stripe_customer_id == stripe_customer_id).first()


def get_user_by_external_id(db: Session, external_auth_id: str) -> Optional[User]:
    if not external_auth_id:
        return None
    return db.query(User).filter(User.external_auth_id == external_auth_id).first()


def resolve_user_ref(db: Session, user_ref: Optional[str]) -> Optional[User]:
    """Resolve the user reference carried in processor metadata.

    Checkout sessions and customers carry the identity provider id; older
    sessions may carry the numeric local id instead.
    """
    if not user_ref:
        return None
    user = get_user_by_external_id(db, user_ref)
    if user is None and str(user_ref).isdigit():
        user = get_user(db, int(user_ref))
    return user


# ===== PLANS & PRICES =====

def get_active_price_by_stripe_id(db: Session, stripe_price_id: str) -> Optional[Price]:
    """Return the price only if both it and its plan are active"""
    if not stripe_price_id:
        return None
    return (
        db.query(Price)
        .join(Plan, Price.plan_id == Plan.id)
        .filter(
            Price.stripe_price_id == stripe_price_id,
            Price.is_active.is_(True),
            Plan.is_active.is_(True),
        )
        .first()
    )


def get_price_by_stripe_id(db: Session, stripe_price_id: str) -> Optional[Price]:
    """Any price, active or not (notifications may reference retired prices)"""
    if not stripe_price_id:
        return None
    return db.query(Price).filter(Price.stripe_price_id == stripe_price_id).first()


def list_public_plans(db: Session) -> List[Plan]:
    """Active, non-private plans ordered by level"""
    return (
        db.query(Plan)
        .options(selectinload(Plan.prices))
        .filter(Plan.is_active.is_(True), Plan.is_private.is_(False))
        .order_by(Plan.level)
        .all()
    )


# ===== SUBSCRIPTIONS =====

def get_current_subscription(
    db: Session,
    user_id: int,
    statuses: Iterable[str] = ENTITLED_STATUSES,
    for_update: bool = False
) -> Optional[Subscription]:
    """Most recently created subscription of the user within ``statuses``"""
    query = (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id, Subscription.status.in_(tuple(statuses)))
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_subscription_by_stripe_id(
    db: Session,
    stripe_subscription_id: str,
    for_update: bool = False
) -> Optional[Subscription]:
    if not stripe_subscription_id:
        return None
    query = db.query(Subscription).filter(
        Subscription.stripe_subscription_id == stripe_subscription_id
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


# ===== ADD-ONS =====

def get_addon(db: Session, addon_id: str) -> Optional[Addon]:
    return db.query(Addon).filter(Addon.id == addon_id).first()


def get_addon_purchase_by_payment_intent(db: Session, payment_intent_id: str) -> Optional[AddonPurchase]:
    return db.query(AddonPurchase).filter(
        AddonPurchase.stripe_payment_intent_id == payment_intent_id
    ).first()
