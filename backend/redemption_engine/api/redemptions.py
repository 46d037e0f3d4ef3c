"""Redemption API routes"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from redemption_engine.core.security import require_api_key
from redemption_engine.db.session import get_db
from redemption_engine.schemas.redemptions import (
    BatchResultResponse, ProcessSubscriptionsRequest, RedemptionStatusResponse
)
from redemption_engine.services.batch_service import (
    build_executor, process_due_subscriptions, process_subscriptions
)
from redemption_engine.services.event_service import get_redemption_status, list_events, serialize_event
from redemption_engine.services.redemption_service import CriticalRedemptionError

router = APIRouter(prefix="/api/redemptions", tags=["redemptions"])
logger = logging.getLogger(__name__)


def get_executor(request: Request):
    """Executor dependency; the app may install a shared settlement client on its state"""
    return build_executor(getattr(request.app.state, "settlement_client", None))


@router.post("/process-due", response_model=BatchResultResponse)
def trigger_due_redemptions(
    _: str = Depends(require_api_key),
    executor=Depends(get_executor),
    db: Session = Depends(get_db)
):
    """Run a redemption batch now instead of waiting for the scheduler"""
    try:
        result = process_due_subscriptions(executor, db=db)
    except CriticalRedemptionError:
        raise HTTPException(500, "Redemption batch rolled back after a critical failure")
    return result.to_dict()


@router.post("/process", response_model=BatchResultResponse)
def trigger_redemptions(
    body: ProcessSubscriptionsRequest,
    _: str = Depends(require_api_key),
    executor=Depends(get_executor),
    db: Session = Depends(get_db)
):
    """Redeem specific subscriptions"""
    try:
        result = process_subscriptions(executor, body.subscription_ids, db=db)
    except CriticalRedemptionError:
        raise HTTPException(500, "Redemption batch rolled back after a critical failure")
    return result.to_dict()


@router.get("/subscriptions/{subscription_id}", response_model=RedemptionStatusResponse)
def get_subscription_redemption_status(subscription_id: str, db: Session = Depends(get_db)):
    """Redemption counters and latest event of a subscription"""
    status = get_redemption_status(db, subscription_id)
    if not status:
        raise HTTPException(404, "Subscription not found")
    return status


@router.get("/subscriptions/{subscription_id}/events")
def get_subscription_events(subscription_id: str, limit: int = 100, db: Session = Depends(get_db)):
    """Event history of a subscription, oldest first"""
    if get_redemption_status(db, subscription_id) is None:
        raise HTTPException(404, "Subscription not found")
    events = list_events(db, subscription_id, limit=limit)
    return {"events": [serialize_event(e) for e in events]}
