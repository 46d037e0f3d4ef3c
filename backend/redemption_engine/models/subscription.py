"""Subscription model"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from redemption_engine.models.base import Base, new_uuid


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    SUSPENDED = "suspended"
    CANCELED = "canceled"
    EXPIRED = "expired"
    FAILED = "failed"
    COMPLETED = "completed"


# Statuses eligible for redemption; next_redemption_date is set only for these
REDEEMABLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.OVERDUE.value)


class Subscription(Base):
    """Customer subscription charged through a stored delegation"""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    workspace_id = Column(String(36), nullable=False, index=True)
    customer_id = Column(String(36), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    price_id = Column(String(36), ForeignKey("prices.id"), nullable=False)
    product_token_id = Column(String(36), ForeignKey("product_tokens.id"), nullable=False)
    delegation_id = Column(String(36), ForeignKey("delegation_data.id"), nullable=False)
    customer_wallet_id = Column(String(36), nullable=True)
    status = Column(String(50), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    next_redemption_date = Column(DateTime(timezone=True), nullable=True)
    total_redemptions = Column(Integer, nullable=False, default=0)
    total_amount_collected = Column(Integer, nullable=False, default=0)
    token_amount = Column(Integer, nullable=False, default=0)  # token units moved per charge
    deleted_at = Column(DateTime(timezone=True), nullable=True)  # soft delete, managed externally
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    price = relationship("Price")
    events = relationship("SubscriptionEvent", back_populates="subscription", order_by="SubscriptionEvent.id")

    __table_args__ = (
        Index('ix_subscriptions_next_redemption', 'next_redemption_date'),
    )
