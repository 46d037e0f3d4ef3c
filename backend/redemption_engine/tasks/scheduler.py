"""Background scheduler task that redeems due subscriptions"""
import asyncio
import logging

from redemption_engine.core.config import settings
from redemption_engine.services.batch_service import build_executor, process_due_subscriptions
from redemption_engine.services.redemption_service import CriticalRedemptionError

logger = logging.getLogger(__name__)
scheduler_logger = logging.getLogger("scheduler")


async def run_redemption_batch(executor):
    """Run one batch in a worker thread; the batch blocks on settlement calls and sleeps"""
    return await asyncio.to_thread(process_due_subscriptions, executor)


async def redemption_scheduler_task(settlement_client=None, interval_seconds: int = None):
    """Redeem due subscriptions every interval until cancelled"""
    interval = interval_seconds or settings.SCHEDULER_INTERVAL_SECONDS
    executor = build_executor(settlement_client)
    scheduler_logger.info(f"Starting redemption scheduler (every {interval}s)")

    while True:
        try:
            await asyncio.sleep(interval)
            result = await run_redemption_batch(executor)
            if result.found:
                scheduler_logger.info(
                    f"Scheduled redemption run: {result.succeeded} succeeded, "
                    f"{result.failed} failed, {result.skipped} skipped of {result.found}"
                )
        except asyncio.CancelledError:
            scheduler_logger.info("Redemption scheduler stopped")
            raise
        except CriticalRedemptionError as e:
            # Batch already rolled back; the next run retries it
            logger.error(f"Scheduled redemption batch rolled back: {e}")
        except Exception as e:
            logger.error(f"Error in redemption scheduler task: {e}", exc_info=True)
