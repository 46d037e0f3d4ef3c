"""Subscription event log - append-only audit trail of redemptions"""
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from redemption_engine.models.subscription import Subscription
from redemption_engine.models.subscription_event import SubscriptionEvent, SubscriptionEventType
from redemption_engine.utils.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class EventValidationError(Exception):
    """The latest stored event does not match the one just written"""


def _event_type_value(event_type) -> str:
    if isinstance(event_type, SubscriptionEventType):
        return event_type.value
    return SubscriptionEventType(event_type).value


def append_event(
    db: Session,
    subscription_id: str,
    event_type,
    amount: int = 0,
    transaction_hash: Optional[str] = None,
    error_message: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    occurred_at: Optional[datetime] = None
) -> SubscriptionEvent:
    """Append an event for a subscription.

    The row is flushed so that it is visible to later reads in the same
    transaction; committing is left to the caller.
    """
    event = SubscriptionEvent(
        subscription_id=subscription_id,
        event_type=_event_type_value(event_type),
        transaction_hash=transaction_hash,
        amount=amount,
        error_message=error_message,
        occurred_at=occurred_at or utcnow(),
        event_metadata=metadata or {}
    )
    db.add(event)
    db.flush()

    logger.debug(
        f"Appended {event.event_type} event {event.id} for subscription {subscription_id}"
        + (f" (tx {transaction_hash})" if transaction_hash else "")
    )
    return event


def get_latest_event(db: Session, subscription_id: str) -> Optional[SubscriptionEvent]:
    """Most recent event for a subscription, ties broken by insertion order"""
    return (
        db.query(SubscriptionEvent)
        .filter(SubscriptionEvent.subscription_id == subscription_id)
        .order_by(SubscriptionEvent.occurred_at.desc(), SubscriptionEvent.id.desc())
        .first()
    )


def validate_latest_event(
    db: Session,
    subscription_id: str,
    event_type,
    transaction_hash: Optional[str]
) -> SubscriptionEvent:
    """Re-read the latest event and check it is the one just written"""
    expected_type = _event_type_value(event_type)
    latest = get_latest_event(db, subscription_id)

    if latest is None:
        raise EventValidationError(f"No events found for subscription {subscription_id}")
    if latest.event_type != expected_type:
        raise EventValidationError(
            f"Latest event for subscription {subscription_id} is {latest.event_type}, expected {expected_type}"
        )
    if latest.transaction_hash != transaction_hash:
        raise EventValidationError(
            f"Latest event for subscription {subscription_id} has transaction hash "
            f"{latest.transaction_hash}, expected {transaction_hash}"
        )
    return latest


def list_events(db: Session, subscription_id: str, limit: int = None) -> List[SubscriptionEvent]:
    """Events for a subscription in chronological order"""
    query = (
        db.query(SubscriptionEvent)
        .filter(SubscriptionEvent.subscription_id == subscription_id)
        .order_by(SubscriptionEvent.occurred_at.asc(), SubscriptionEvent.id.asc())
    )
    if limit:
        query = query.limit(limit)
    return query.all()


def serialize_event(event: SubscriptionEvent) -> Dict[str, Any]:
    return {
        'id': event.id,
        'subscription_id': event.subscription_id,
        'event_type': event.event_type,
        'transaction_hash': event.transaction_hash,
        'amount': event.amount,
        'error_message': event.error_message,
        'occurred_at': ensure_utc(event.occurred_at).isoformat(),
        'metadata': event.event_metadata or {},
    }


def get_redemption_status(db: Session, subscription_id: str) -> Optional[Dict[str, Any]]:
    """Redemption counters of a subscription together with its latest event"""
    subscription = (
        db.query(Subscription)
        .filter(Subscription.id == subscription_id, Subscription.deleted_at.is_(None))
        .first()
    )
    if not subscription:
        return None

    latest = get_latest_event(db, subscription_id)
    next_date = ensure_utc(subscription.next_redemption_date)

    return {
        'subscription_id': subscription.id,
        'status': subscription.status,
        'total_redemptions': subscription.total_redemptions,
        'total_amount_collected': subscription.total_amount_collected,
        'next_redemption_date': next_date.isoformat() if next_date else None,
        'latest_event': serialize_event(latest) if latest else None,
    }
