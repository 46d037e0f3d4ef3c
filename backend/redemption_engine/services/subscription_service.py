"""Subscription queries and state transitions used by the redemption engine"""
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional, List
import logging

from redemption_engine.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


class SubscriptionNotFoundError(Exception):
    """No live subscription exists with the given id"""


def list_due_subscriptions(db: Session, before: datetime) -> List[Subscription]:
    """Live subscriptions whose next redemption is at or before the given time, oldest first"""
    return (
        db.query(Subscription)
        .filter(
            Subscription.next_redemption_date.is_not(None),
            Subscription.next_redemption_date <= before,
            Subscription.deleted_at.is_(None)
        )
        .order_by(Subscription.next_redemption_date.asc())
        .all()
    )


def get_subscription(db: Session, subscription_id: str, for_update: bool = False) -> Optional[Subscription]:
    """Load a subscription, bypassing any copy already held by the session.

    With for_update the row is locked until the surrounding transaction ends
    (ignored by backends without row locks).
    """
    query = (
        db.query(Subscription)
        .filter(Subscription.id == subscription_id, Subscription.deleted_at.is_(None))
        .populate_existing()
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def _require(db: Session, subscription_id: str) -> Subscription:
    subscription = get_subscription(db, subscription_id)
    if not subscription:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
    return subscription


def increment_redemption(
    db: Session,
    subscription_id: str,
    amount: int,
    next_redemption_date: Optional[datetime]
) -> Subscription:
    """Record one successful charge and move the schedule forward"""
    subscription = _require(db, subscription_id)
    subscription.total_redemptions = (subscription.total_redemptions or 0) + 1
    subscription.total_amount_collected = (subscription.total_amount_collected or 0) + amount
    subscription.next_redemption_date = next_redemption_date
    db.flush()
    return subscription


def complete_subscription(db: Session, subscription_id: str) -> Subscription:
    """Mark a subscription as having finished its term"""
    subscription = _require(db, subscription_id)
    subscription.status = SubscriptionStatus.COMPLETED.value
    subscription.next_redemption_date = None
    db.flush()
    logger.info(f"Subscription {subscription_id} completed after {subscription.total_redemptions} redemptions")
    return subscription


def update_status(db: Session, subscription_id: str, status) -> Subscription:
    subscription = _require(db, subscription_id)
    subscription.status = SubscriptionStatus(status).value
    db.flush()
    return subscription
