"""User model"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class User(Base):
    """User accounts mirrored from the identity provider"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    external_auth_id = Column(String(255), unique=True, nullable=False, index=True)  # Identity provider user ID
    email = Column(String(255), unique=True, nullable=False, index=True)
    first_name = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), unique=True, nullable=True, index=True)  # Created lazily on first checkout
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="user", order_by="Subscription.created_at.desc()")
    addon_purchases = relationship("AddonPurchase", back_populates="user")
