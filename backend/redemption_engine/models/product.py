"""Product, Price and ProductToken models"""
import enum

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from redemption_engine.models.base import Base, new_uuid


class PriceType(str, enum.Enum):
    RECURRING = "recurring"
    ONE_OFF = "one_off"


class IntervalType(str, enum.Enum):
    ONE_MINUTE = "1min"
    FIVE_MINUTES = "5mins"
    DAILY = "daily"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=new_uuid)
    workspace_id = Column(String(36), nullable=False, index=True)
    wallet_id = Column(String(36), ForeignKey("wallets.id"), nullable=False)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    wallet = relationship("Wallet")
    prices = relationship("Price", back_populates="product")


class Price(Base):
    """Immutable pricing definition referenced by subscriptions"""
    __tablename__ = "prices"

    id = Column(String(36), primary_key=True, default=new_uuid)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    type = Column(String(50), nullable=False)  # 'recurring', 'one_off'
    interval_type = Column(String(50), nullable=True)  # '1min', '5mins', 'daily', 'week', 'month', 'year'
    term_length = Column(Integer, nullable=False, default=0)  # 0 = unbounded
    unit_amount = Column(Integer, nullable=False)  # minor currency units
    currency = Column(String(10), nullable=False, default="USD")

    product = relationship("Product", back_populates="prices")


class ProductToken(Base):
    """Token a product accepts on a given network"""
    __tablename__ = "product_tokens"

    id = Column(String(36), primary_key=True, default=new_uuid)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    network_id = Column(String(36), ForeignKey("networks.id"), nullable=False)
    token_id = Column(String(36), ForeignKey("tokens.id"), nullable=False)
