"""Redemption of a single due subscription.

Idempotency guards run against a fresh read of the subscription inside the
batch transaction, so a stale selection snapshot or an overlapping batch run
never triggers a second charge for the same billing period. Once a charge has
settled, every bookkeeping failure is escalated to CriticalRedemptionError,
which unwinds the whole batch transaction.
"""
import enum
import json
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from redemption_engine.core.config import settings
from redemption_engine.core.metrics import critical_failures_counter, settlement_attempts_counter
from redemption_engine.models.delegation import DelegationDatum
from redemption_engine.models.network import Network
from redemption_engine.models.product import Price, PriceType, ProductToken
from redemption_engine.models.subscription import REDEEMABLE_STATUSES, Subscription, SubscriptionStatus
from redemption_engine.models.subscription_event import SubscriptionEventType
from redemption_engine.models.token import Token
from redemption_engine.models.wallet import Wallet
from redemption_engine.services import event_service, subscription_service
from redemption_engine.services.interval_service import calculate_next_redemption
from redemption_engine.services.settlement_client import (
    ExecutionParams, SettlementClient, SettlementErrorKind, classify_settlement_error
)
from redemption_engine.utils.timeutils import ensure_utc

logger = logging.getLogger(__name__)
redemption_logger = logging.getLogger("redemption")


class CriticalRedemptionError(Exception):
    """A charge settled but its bookkeeping could not be persisted"""

    def __init__(self, message: str, subscription_id: str = None, transaction_hash: str = None):
        super().__init__(message)
        self.subscription_id = subscription_id
        self.transaction_hash = transaction_hash


class DelegationSerializationError(Exception):
    """Stored delegation cannot be encoded for transmission"""


class RedemptionOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RedemptionResult:
    subscription_id: str
    outcome: RedemptionOutcome
    completed: bool = False
    transaction_hash: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Subscription row as seen when the batch selected it"""
    id: str
    status: str
    next_redemption_date: Optional[datetime]
    total_redemptions: int
    product_id: str
    price_id: str
    product_token_id: str
    delegation_id: str

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionSnapshot":
        return cls(
            id=subscription.id,
            status=subscription.status,
            next_redemption_date=ensure_utc(subscription.next_redemption_date),
            total_redemptions=subscription.total_redemptions or 0,
            product_id=subscription.product_id,
            price_id=subscription.price_id,
            product_token_id=subscription.product_token_id,
            delegation_id=subscription.delegation_id,
        )


@dataclass(frozen=True)
class RedemptionContext:
    """Reference data a redemption needs besides the subscription itself"""
    price: Price
    product_token: ProductToken
    token: Token
    network: Network
    merchant_wallet: Wallet
    delegation: DelegationDatum


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff: float = 1.0
    max_backoff: float = 10.0
    jitter_low: float = 0.8
    jitter_high: float = 1.2

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.REDEMPTION_MAX_ATTEMPTS,
            initial_backoff=settings.REDEMPTION_INITIAL_BACKOFF,
            max_backoff=settings.REDEMPTION_MAX_BACKOFF,
        )

    def delay(self, attempt: int, rand: Callable[[float, float], float] = random.uniform) -> float:
        """Jittered wait before the zero-based attempt number"""
        base = min(self.max_backoff, self.initial_backoff * (2 ** attempt))
        return base * rand(self.jitter_low, self.jitter_high)


def is_final_payment(price: Price, total_redemptions: int) -> bool:
    """Whether the next successful charge ends the subscription's term"""
    if price.type == PriceType.ONE_OFF.value:
        return total_redemptions + 1 >= 1
    if price.type == PriceType.RECURRING.value and (price.term_length or 0) > 0:
        return total_redemptions + 1 >= price.term_length
    return False


def serialize_delegation(delegation: DelegationDatum) -> str:
    """Canonical JSON form of a stored delegation"""
    try:
        return json.dumps({
            "delegate": delegation.delegate,
            "delegator": delegation.delegator,
            "authority": delegation.authority,
            "caveats": delegation.caveats or [],
            "salt": delegation.salt,
            "signature": delegation.signature,
        }, sort_keys=True, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise DelegationSerializationError(f"Failed to serialize delegation {delegation.id}: {e}") from e


def build_execution_params(subscription: Subscription, context: RedemptionContext) -> ExecutionParams:
    return ExecutionParams(
        merchant_address=context.merchant_wallet.wallet_address,
        token_contract=context.token.contract_address,
        token_amount=subscription.token_amount,
        token_decimals=context.token.decimals,
        chain_id=context.network.chain_id,
        network_name=context.network.name,
    )


class RedemptionExecutor:
    """Runs one redemption attempt cycle for a subscription"""

    def __init__(
        self,
        client: SettlementClient,
        policy: RetryPolicy = None,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[float, float], float] = random.uniform
    ):
        self.client = client
        self.policy = policy or RetryPolicy.from_settings()
        self.sleep = sleep
        self.rand = rand

    def redeem(
        self,
        db: Session,
        snapshot: SubscriptionSnapshot,
        context: RedemptionContext,
        now: datetime
    ) -> RedemptionResult:
        subscription = subscription_service.get_subscription(db, snapshot.id, for_update=True)
        if subscription is None:
            redemption_logger.warning(f"Subscription {snapshot.id} disappeared before redemption")
            return RedemptionResult(snapshot.id, RedemptionOutcome.FAILED, error="subscription not found")

        guarded = self._check_guards(subscription, now)
        if guarded is not None:
            return guarded

        price = context.price
        final_payment = is_final_payment(price, subscription.total_redemptions or 0)

        try:
            serialized = serialize_delegation(context.delegation)
        except DelegationSerializationError as e:
            redemption_logger.error(str(e))
            self._write_failure_event(db, subscription, price, str(e), attempts=0,
                                      error_kind="serialization", final_payment=final_payment)
            return RedemptionResult(subscription.id, RedemptionOutcome.FAILED, error=str(e))

        params = build_execution_params(subscription, context)
        tx_hash, error, error_kind, attempts = self._settle(subscription.id, serialized, params)

        if tx_hash is not None:
            return self._record_success(db, subscription, price, tx_hash, attempts, final_payment, now)
        return self._record_failure(db, subscription, price, error, error_kind, attempts, final_payment)

    def _check_guards(self, subscription: Subscription, now: datetime) -> Optional[RedemptionResult]:
        status = subscription.status
        next_date = ensure_utc(subscription.next_redemption_date)

        if status == SubscriptionStatus.COMPLETED.value:
            redemption_logger.info(f"Subscription {subscription.id} already completed, skipping")
            return RedemptionResult(subscription.id, RedemptionOutcome.SKIPPED)
        if status == SubscriptionStatus.FAILED.value:
            redemption_logger.info(f"Subscription {subscription.id} is in failed state, not redeeming")
            return RedemptionResult(subscription.id, RedemptionOutcome.FAILED, error="subscription failed")
        if next_date is not None and next_date > now:
            redemption_logger.info(
                f"Subscription {subscription.id} already advanced to {next_date.isoformat()}, skipping charge"
            )
            return RedemptionResult(subscription.id, RedemptionOutcome.SUCCEEDED)
        if status not in REDEEMABLE_STATUSES:
            redemption_logger.debug(f"Subscription {subscription.id} has status {status}, skipping")
            return RedemptionResult(subscription.id, RedemptionOutcome.SKIPPED)
        return None

    def _settle(
        self,
        subscription_id: str,
        serialized: str,
        params: ExecutionParams
    ) -> Tuple[Optional[str], Optional[str], Optional[SettlementErrorKind], int]:
        """Call the settlement client with retries.

        Returns (tx_hash, error_message, error_kind, attempts).
        """
        error_message = None
        error_kind = None
        attempts = 0

        for attempt in range(self.policy.max_attempts):
            if attempt > 0:
                delay = self.policy.delay(attempt, self.rand)
                redemption_logger.info(
                    f"Retrying redemption for subscription {subscription_id} "
                    f"(attempt {attempt + 1}/{self.policy.max_attempts}) in {delay:.2f}s"
                )
                self.sleep(delay)

            attempts += 1
            try:
                tx_hash = self.client.redeem(serialized, params)
            except Exception as e:
                error_message = getattr(e, "message", None) or str(e)
                error_kind = classify_settlement_error(e)
            else:
                settlement_attempts_counter.labels(result="success").inc()
                return tx_hash, None, None, attempts

            settlement_attempts_counter.labels(result=error_kind.value).inc()
            if error_kind is SettlementErrorKind.PERMANENT:
                redemption_logger.info(
                    f"Permanent error redeeming subscription {subscription_id}, not retrying: {error_message}"
                )
                break
            if error_kind is SettlementErrorKind.NONCE_COLLISION:
                redemption_logger.info(
                    f"Nonce collision redeeming subscription {subscription_id} "
                    f"(attempt {attempts}/{self.policy.max_attempts}): {error_message}"
                )
            else:
                redemption_logger.warning(
                    f"Transient error redeeming subscription {subscription_id} "
                    f"(attempt {attempts}/{self.policy.max_attempts}): {error_message}"
                )

        return None, error_message, error_kind, attempts

    def _record_success(
        self,
        db: Session,
        subscription: Subscription,
        price: Price,
        tx_hash: str,
        attempts: int,
        final_payment: bool,
        now: datetime
    ) -> RedemptionResult:
        subscription_id = subscription.id
        next_date = None
        if price.type == PriceType.RECURRING.value:
            if not price.interval_type:
                message = f"Price {price.id} is recurring but has no interval type configured"
                redemption_logger.error(f"{message} (subscription {subscription_id}, tx {tx_hash})")
                self._write_failure_event(db, subscription, price, message, attempts=attempts,
                                          error_kind="configuration", final_payment=final_payment,
                                          extra={"transaction_hash": tx_hash})
                return RedemptionResult(subscription_id, RedemptionOutcome.FAILED, transaction_hash=tx_hash,
                                        attempts=attempts, error=message)
            next_date = calculate_next_redemption(price.interval_type, now)

        try:
            updated = subscription_service.increment_redemption(db, subscription_id, price.unit_amount, next_date)
            total_after = updated.total_redemptions

            if final_payment:
                subscription_service.complete_subscription(db, subscription_id)

            event_service.append_event(
                db,
                subscription_id,
                SubscriptionEventType.REDEEMED,
                amount=price.unit_amount,
                transaction_hash=tx_hash,
                metadata={
                    "next_redemption": next_date.isoformat() if next_date and not final_payment else None,
                    "total_redemptions_after": total_after,
                    "term_length": price.term_length,
                    "is_final_payment": final_payment,
                    "attempts": attempts,
                }
            )
            event_service.validate_latest_event(db, subscription_id, SubscriptionEventType.REDEEMED, tx_hash)

            if final_payment:
                event_service.append_event(
                    db,
                    subscription_id,
                    SubscriptionEventType.COMPLETED,
                    amount=0,
                    metadata={
                        "final_total_redemptions": total_after,
                        "term_length": price.term_length,
                        "subscription_completed": True,
                    }
                )
        except Exception as e:
            critical_failures_counter.inc()
            logger.error(
                f"CRITICAL: subscription {subscription_id} was charged (tx {tx_hash}) "
                f"but its state could not be recorded: {e}",
                exc_info=True
            )
            raise CriticalRedemptionError(
                f"Failed to record redemption of subscription {subscription_id}: {e}",
                subscription_id=subscription_id,
                transaction_hash=tx_hash
            ) from e

        redemption_logger.info(
            f"Redeemed subscription {subscription_id} (tx {tx_hash}, redemption {total_after}"
            + (f"/{price.term_length}" if price.term_length else "")
            + (", completed)" if final_payment else ")")
        )
        return RedemptionResult(subscription_id, RedemptionOutcome.SUCCEEDED, completed=final_payment,
                                transaction_hash=tx_hash, attempts=attempts)

    def _record_failure(
        self,
        db: Session,
        subscription: Subscription,
        price: Price,
        error: Optional[str],
        error_kind: Optional[SettlementErrorKind],
        attempts: int,
        final_payment: bool
    ) -> RedemptionResult:
        subscription_id = subscription.id
        message = error or "redemption failed"

        if final_payment:
            # next_redemption_date stays as is; the subscription remains due
            subscription_service.update_status(db, subscription_id, SubscriptionStatus.OVERDUE)
            redemption_logger.warning(f"Final payment for subscription {subscription_id} failed, marked overdue")

        self._write_failure_event(db, subscription, price, message, attempts=attempts,
                                  error_kind=error_kind.value if error_kind else None,
                                  final_payment=final_payment)
        redemption_logger.error(
            f"Failed to redeem subscription {subscription_id} after {attempts} attempt(s): {message}"
        )
        return RedemptionResult(subscription_id, RedemptionOutcome.FAILED, attempts=attempts, error=message)

    @staticmethod
    def _write_failure_event(
        db: Session,
        subscription: Subscription,
        price: Price,
        message: str,
        attempts: int,
        error_kind: Optional[str],
        final_payment: bool,
        extra: Dict[str, Any] = None
    ):
        metadata = {
            "attempts": attempts,
            "error_kind": error_kind,
            "is_final_payment": final_payment,
        }
        if extra:
            metadata.update(extra)
        event_service.append_event(
            db,
            subscription.id,
            SubscriptionEventType.FAILED_REDEMPTION,
            amount=price.unit_amount,
            error_message=message,
            metadata=metadata
        )
