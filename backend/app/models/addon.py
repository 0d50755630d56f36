"""Addon and AddonPurchase models"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Addon(Base):
    """One-time or fixed-duration extra, gated by a minimum plan level"""
    __tablename__ = "addons"

    id = Column(String(50), primary_key=True)  # 'ADDON_PRIORITY_SUPPORT', ...
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    level_required = Column(Integer, default=1, nullable=False)
    stripe_price_id = Column(String(255), unique=True, nullable=True, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), default="brl", nullable=False)
    duration_days = Column(Integer, nullable=True)  # None = permanent one-time purchase
    is_active = Column(Boolean, default=True, nullable=False)


class AddonPurchase(Base):
    """Fulfilled add-on purchase, keyed by the payment intent"""
    __tablename__ = "addon_purchases"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    addon_id = Column(String(50), ForeignKey("addons.id"), nullable=False)
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    provisioned_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="addon_purchases")
    addon = relationship("Addon")
