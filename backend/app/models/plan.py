"""Plan and Price models"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base

PRICE_INTERVALS = ("month", "year", "one_time")


class Plan(Base):
    """A plan tier; ``level`` orders tiers (higher = more capable)"""
    __tablename__ = "plans"

    id = Column(String(50), primary_key=True)  # 'PLAN_FREE', 'PLAN_BASIC', 'PLAN_PRO', 'PLAN_ENTERPRISE'
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    level = Column(Integer, unique=True, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_private = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    prices = relationship("Price", back_populates="plan", order_by="Price.amount")


class Price(Base):
    """A purchasable unit of a Plan (e.g. monthly or annual)"""
    __tablename__ = "prices"

    id = Column(Integer, primary_key=True, index=True)
    plan_id = Column(String(50), ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False, index=True)
    stripe_price_id = Column(String(255), unique=True, nullable=False, index=True)
    interval = Column(String(20), nullable=False)  # 'month', 'year', 'one_time'
    interval_count = Column(Integer, default=1, nullable=False)
    amount = Column(Integer, nullable=False)  # minor currency units (cents)
    currency = Column(String(3), default="brl", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    plan = relationship("Plan", back_populates="prices")
