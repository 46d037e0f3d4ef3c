"""Pydantic schemas for redemption endpoints"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ProcessSubscriptionsRequest(BaseModel):
    subscription_ids: List[str] = Field(..., min_length=1)


class BatchResultResponse(BaseModel):
    started_at: str
    found: int
    succeeded: int
    failed: int
    skipped: int
    completed: int
    transaction_hashes: List[str] = []


class SubscriptionEventResponse(BaseModel):
    id: int
    subscription_id: str
    event_type: str
    transaction_hash: Optional[str] = None
    amount: int
    error_message: Optional[str] = None
    occurred_at: str
    metadata: Dict[str, Any] = {}


class RedemptionStatusResponse(BaseModel):
    subscription_id: str
    status: str
    total_redemptions: int
    total_amount_collected: int
    next_redemption_date: Optional[str] = None
    latest_event: Optional[SubscriptionEventResponse] = None
