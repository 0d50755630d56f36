"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base

# Statuses that grant entitlement ("current" subscription)
ENTITLED_STATUSES = ("active", "trialing", "past_due")
# Statuses from which a plan change may be requested
CHANGEABLE_STATUSES = ("active", "trialing")


class Subscription(Base):
    """Binding between a user and a price over time. Never hard-deleted."""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    price_id = Column(Integer, ForeignKey("prices.id"), nullable=False)
    stripe_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    status = Column(String(50), nullable=False)  # 'trialing', 'active', 'past_due', 'canceled', 'incomplete'
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancel_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    scheduled_price_id = Column(Integer, ForeignKey("prices.id"), nullable=True)  # Deferred downgrade target
    scheduled_change_at = Column(DateTime(timezone=True), nullable=True)  # Period boundary the downgrade waits for
    price_synced_at = Column(DateTime(timezone=True), nullable=True)  # When price_id was last written; older snapshots keep it
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Optimistic locking: concurrent writers of the same row fail with StaleDataError
    __mapper_args__ = {"version_id_col": version}

    # Relationships
    user = relationship("User", back_populates="subscriptions")
    price = relationship("Price", foreign_keys=[price_id])
    scheduled_price = relationship("Price", foreign_keys=[scheduled_price_id])
