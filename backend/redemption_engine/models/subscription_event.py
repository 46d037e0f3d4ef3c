"""SubscriptionEvent model"""
import enum

from sqlalchemy import Column, Integer, String, ForeignKey, JSON, Index, DateTime, Text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from redemption_engine.models.base import Base


class SubscriptionEventType(str, enum.Enum):
    CREATED = "created"
    REDEEMED = "redeemed"
    FAILED_REDEMPTION = "failed_redemption"
    COMPLETED = "completed"


class SubscriptionEvent(Base):
    """Append-only audit log of redemption attempts and outcomes"""
    __tablename__ = "subscription_events"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)  # 'created', 'redeemed', 'failed_redemption', 'completed'
    transaction_hash = Column(String(255), nullable=True)
    amount = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    occurred_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    event_metadata = Column(JSON, default=dict)

    subscription = relationship("Subscription", back_populates="events")

    __table_args__ = (
        Index('ix_subscription_events_sub_occurred', 'subscription_id', 'occurred_at'),
    )
