#!/usr/bin/env python3
"""
Run a redemption batch once, outside the API scheduler.

Usage:
    # Redeem everything that is due now
    python process_due_subscriptions.py

    # Only list what is due
    python process_due_subscriptions.py --dry-run

    # Redeem specific subscriptions
    python process_due_subscriptions.py --subscription-id <uuid> --subscription-id <uuid>
"""

import argparse
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from redemption_engine.core.logging import setup_logging
from redemption_engine.db.session import SessionLocal
from redemption_engine.services.batch_service import (
    build_executor, process_due_subscriptions, process_subscriptions
)
from redemption_engine.services.redemption_service import CriticalRedemptionError
from redemption_engine.services.settlement_client import DelegationServerClient
from redemption_engine.services.subscription_service import list_due_subscriptions
from redemption_engine.utils.timeutils import ensure_utc, utcnow


def list_due():
    """Print subscriptions that are due without redeeming them"""
    db = SessionLocal()
    try:
        due = list_due_subscriptions(db, utcnow())
        if not due:
            print("No subscriptions due")
            return True
        print(f"{len(due)} subscription(s) due:")
        for subscription in due:
            print(
                f"   {subscription.id}  status={subscription.status}  "
                f"next={ensure_utc(subscription.next_redemption_date).isoformat()}  "
                f"redemptions={subscription.total_redemptions}"
            )
        return True
    finally:
        db.close()


def run(subscription_ids=None):
    """Redeem due (or selected) subscriptions and print the summary"""
    with DelegationServerClient() as client:
        executor = build_executor(client)
        try:
            if subscription_ids:
                result = process_subscriptions(executor, subscription_ids)
            else:
                result = process_due_subscriptions(executor)
        except CriticalRedemptionError as e:
            print(f"❌ Batch rolled back after critical failure: {e}")
            if e.transaction_hash:
                print(f"   Settled transaction needing reconciliation: {e.transaction_hash}")
            return False

    print(f"✅ Batch finished: found={result.found} succeeded={result.succeeded} "
          f"failed={result.failed} skipped={result.skipped} completed={result.completed}")
    for tx_hash in result.transaction_hashes:
        print(f"   tx {tx_hash}")
    return result.failed == 0


def main():
    parser = argparse.ArgumentParser(
        description='Redeem subscriptions that are due for payment',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--dry-run', action='store_true', help='List due subscriptions without redeeming')
    parser.add_argument('--subscription-id', action='append', dest='subscription_ids',
                        help='Redeem only this subscription (repeatable)')

    args = parser.parse_args()
    setup_logging()

    if args.dry_run:
        success = list_due()
    else:
        success = run(args.subscription_ids)

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
