import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from payment_service.config import Settings
from payment_service.database import get_session
from payment_service.messaging import EventPublisher
from payment_service.models import MpesaTransaction, TransactionStatus
from payment_service.store import TransactionStore

logger = logging.getLogger(__name__)

TIMEOUT_RESULT_DESC = "Timed out waiting for M-Pesa callback"

async def sweep_stale_transactions(
    store: TransactionStore,
    max_age: timedelta,
    publisher: Optional[EventPublisher] = None,
    now: Optional[datetime] = None,
) -> List[MpesaTransaction]:
    """Fail every transaction still pending after max_age."""
    now = now or datetime.utcnow()
    stale = await store.list_stale_pending(now - max_age)
    for transaction in stale:
        transaction.status = TransactionStatus.FAILED
        transaction.result_desc = TIMEOUT_RESULT_DESC
        transaction.updated_at = now
        await store.save(transaction)
        logger.warning(
            "Transaction %s (checkout %s) expired after %s without a callback",
            transaction.id, transaction.checkout_request_id, max_age,
        )
        if publisher is not None:
            await publisher.publish_outcome(transaction)
    return stale

async def run_sweeper(settings: Settings, publisher: Optional[EventPublisher] = None):
    max_age = timedelta(minutes=settings.pending_timeout_minutes)
    logger.info(
        "Pending transaction sweeper started (timeout %s, every %ss)",
        max_age, settings.sweep_interval_seconds,
    )
    while True:
        try:
            async for session in get_session():
                expired = await sweep_stale_transactions(TransactionStore(session), max_age, publisher)
                if expired:
                    logger.info("Sweeper failed %d stale transaction(s)", len(expired))
        except Exception as e:
            logger.error("Error sweeping pending transactions: %s", e, exc_info=True)
        await asyncio.sleep(settings.sweep_interval_seconds)
