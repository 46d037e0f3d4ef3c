"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from redemption_engine.models.base import Base
from redemption_engine.models.network import Network
from redemption_engine.models.token import Token
from redemption_engine.models.wallet import Wallet
from redemption_engine.models.product import Product, Price, ProductToken, PriceType, IntervalType
from redemption_engine.models.delegation import DelegationDatum
from redemption_engine.models.subscription import Subscription, SubscriptionStatus, REDEEMABLE_STATUSES
from redemption_engine.models.subscription_event import SubscriptionEvent, SubscriptionEventType

__all__ = [
    "Base", "Network", "Token", "Wallet", "Product", "Price", "ProductToken",
    "PriceType", "IntervalType", "DelegationDatum", "Subscription",
    "SubscriptionStatus", "REDEEMABLE_STATUSES", "SubscriptionEvent",
    "SubscriptionEventType"
]
