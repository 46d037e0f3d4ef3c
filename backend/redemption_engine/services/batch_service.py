"""Due-subscription batch processing"""
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from redemption_engine.core.config import settings
from redemption_engine.core.metrics import batch_duration_histogram, batch_runs_counter, record_batch_result
from redemption_engine.core.otel import get_tracer
from redemption_engine.db.session import transaction
from redemption_engine.models.delegation import DelegationDatum
from redemption_engine.models.network import Network
from redemption_engine.models.product import Price, Product, ProductToken
from redemption_engine.models.subscription import REDEEMABLE_STATUSES, Subscription
from redemption_engine.models.token import Token
from redemption_engine.models.wallet import Wallet
from redemption_engine.services.redemption_service import (
    CriticalRedemptionError, RedemptionContext, RedemptionExecutor, RedemptionOutcome,
    RedemptionResult, SubscriptionSnapshot
)
from redemption_engine.services.settlement_client import DelegationServerClient, SettlementClient
from redemption_engine.services.subscription_service import list_due_subscriptions
from redemption_engine.utils.timeutils import utcnow

logger = logging.getLogger(__name__)
redemption_logger = logging.getLogger("redemption")


class ReferenceDataError(Exception):
    """Price, token, network, wallet or delegation of a subscription could not be loaded"""


@dataclass(frozen=True)
class BatchResult:
    """Per-run counters, built by folding each subscription's result"""
    started_at: datetime
    found: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    completed: int = 0
    transaction_hashes: tuple = field(default=())

    def fold(self, result: RedemptionResult) -> "BatchResult":
        updated = replace(self, completed=self.completed + (1 if result.completed else 0))
        if result.transaction_hash and result.outcome == RedemptionOutcome.SUCCEEDED:
            updated = replace(updated, transaction_hashes=updated.transaction_hashes + (result.transaction_hash,))
        if result.outcome == RedemptionOutcome.SUCCEEDED:
            return replace(updated, succeeded=updated.succeeded + 1)
        if result.outcome == RedemptionOutcome.FAILED:
            return replace(updated, failed=updated.failed + 1)
        return replace(updated, skipped=updated.skipped + 1)

    def to_dict(self):
        return {
            'started_at': self.started_at.isoformat(),
            'found': self.found,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'skipped': self.skipped,
            'completed': self.completed,
            'transaction_hashes': list(self.transaction_hashes),
        }


def _get(db: Session, model, object_id: Optional[str], label: str, subscription_id: str):
    instance = db.query(model).filter(model.id == object_id).first() if object_id else None
    if instance is None:
        raise ReferenceDataError(f"{label} {object_id} not found for subscription {subscription_id}")
    return instance


def resolve_reference_data(db: Session, snapshot: SubscriptionSnapshot) -> RedemptionContext:
    """Load everything a redemption needs, in the batch transaction"""
    sid = snapshot.id
    price = _get(db, Price, snapshot.price_id, "Price", sid)
    product_token = _get(db, ProductToken, snapshot.product_token_id, "Product token", sid)
    token = _get(db, Token, product_token.token_id, "Token", sid)
    network = _get(db, Network, product_token.network_id, "Network", sid)
    product = _get(db, Product, snapshot.product_id, "Product", sid)
    wallet = _get(db, Wallet, product.wallet_id, "Merchant wallet", sid)
    delegation = _get(db, DelegationDatum, snapshot.delegation_id, "Delegation", sid)
    return RedemptionContext(
        price=price,
        product_token=product_token,
        token=token,
        network=network,
        merchant_wallet=wallet,
        delegation=delegation,
    )


def build_executor(client: SettlementClient = None) -> RedemptionExecutor:
    """Executor wired to the delegation server unless a client is given"""
    return RedemptionExecutor(client or DelegationServerClient())


def _process_one(
    db: Session,
    executor: RedemptionExecutor,
    snapshot: SubscriptionSnapshot,
    now: datetime
) -> RedemptionResult:
    if snapshot.status not in REDEEMABLE_STATUSES:
        redemption_logger.debug(f"Subscription {snapshot.id} has status {snapshot.status} at selection, skipping")
        return RedemptionResult(snapshot.id, RedemptionOutcome.SKIPPED)

    try:
        context = resolve_reference_data(db, snapshot)
    except ReferenceDataError as e:
        redemption_logger.error(str(e))
        return RedemptionResult(snapshot.id, RedemptionOutcome.FAILED, error=str(e))

    return executor.redeem(db, snapshot, context, now)


def _run(
    db: Session,
    executor: RedemptionExecutor,
    snapshots: List[SubscriptionSnapshot],
    result: BatchResult,
    now: datetime,
    isolate: bool
) -> BatchResult:
    tracer = get_tracer()
    for snapshot in snapshots:
        with tracer.start_as_current_span("redemption.subscription") as span:
            span.set_attribute("subscription.id", snapshot.id)
            try:
                # Partial writes of a subscription that raises are discarded with its savepoint
                with db.begin_nested():
                    redemption = _process_one(db, executor, snapshot, now)
            except CriticalRedemptionError:
                raise
            except Exception as e:
                logger.error(f"Error processing subscription {snapshot.id}: {e}", exc_info=True)
                redemption = RedemptionResult(snapshot.id, RedemptionOutcome.FAILED, error=str(e))

            span.set_attribute("redemption.outcome", redemption.outcome.value)
            result = result.fold(redemption)

            if isolate:
                db.commit()
    return result


def _execute_batch(
    snapshots_loader,
    executor: RedemptionExecutor,
    db: Session = None,
    now: datetime = None,
    isolate: bool = None,
    label: str = "due"
) -> BatchResult:
    now = now or utcnow()
    isolate = settings.REDEMPTION_ISOLATE_SUBSCRIPTIONS if isolate is None else isolate
    started = time.monotonic()
    result = BatchResult(started_at=now)

    with get_tracer().start_as_current_span("redemption.batch") as span:
        try:
            with transaction(db) as session:
                snapshots, missing = snapshots_loader(session, now)
                result = replace(result, found=len(snapshots) + missing, failed=missing)
                span.set_attribute("batch.found", result.found)

                if not snapshots:
                    redemption_logger.info(f"No {label} subscriptions to process")
                else:
                    redemption_logger.info(f"Processing {len(snapshots)} {label} subscription(s)")
                    result = _run(session, executor, snapshots, result, now, isolate)
        except CriticalRedemptionError as e:
            batch_runs_counter.labels(status="critical").inc()
            logger.error(
                f"Redemption batch aborted and rolled back after critical failure on "
                f"subscription {e.subscription_id}: {e}"
            )
            raise
        except Exception:
            batch_runs_counter.labels(status="error").inc()
            raise
        finally:
            batch_duration_histogram.observe(time.monotonic() - started)

    batch_runs_counter.labels(status="success").inc()
    record_batch_result(result)
    redemption_logger.info(
        f"Redemption batch finished: found={result.found} succeeded={result.succeeded} "
        f"failed={result.failed} skipped={result.skipped} completed={result.completed}"
    )
    return result


def process_due_subscriptions(
    executor: RedemptionExecutor,
    db: Session = None,
    now: datetime = None,
    isolate: bool = None
) -> BatchResult:
    """Redeem every subscription due at `now` inside one transaction.

    Per-subscription failures are counted and the batch carries on. A
    CriticalRedemptionError rolls back the transaction and is re-raised; with
    isolate=True the subscriptions finished before it stay committed.
    """
    def load_due(session, as_of):
        due = list_due_subscriptions(session, as_of)
        return [SubscriptionSnapshot.from_model(s) for s in due], 0

    return _execute_batch(load_due, executor, db=db, now=now, isolate=isolate, label="due")


def process_subscriptions(
    executor: RedemptionExecutor,
    subscription_ids: Iterable[str],
    db: Session = None,
    now: datetime = None,
    isolate: bool = None
) -> BatchResult:
    """Run the redemption pipeline for specific subscriptions.

    The usual guards apply, so a subscription that is not yet due is reported
    as already advanced rather than charged early. Unknown ids count as failed.
    """
    ids = list(dict.fromkeys(subscription_ids))

    def load_selected(session, as_of):
        rows = (
            session.query(Subscription)
            .filter(Subscription.id.in_(ids), Subscription.deleted_at.is_(None))
            .order_by(Subscription.next_redemption_date.asc())
            .all()
        ) if ids else []
        found_ids = {row.id for row in rows}
        for missing_id in ids:
            if missing_id not in found_ids:
                redemption_logger.warning(f"Subscription {missing_id} not found for manual redemption")
        return [SubscriptionSnapshot.from_model(s) for s in rows], len(ids) - len(found_ids)

    return _execute_batch(load_selected, executor, db=db, now=now, isolate=isolate, label="selected")
