"""
Payment Expiry Worker.

Runs every few minutes to expire pushes that never got a callback.
A late callback racing this sweep is resolved by the ledger's conditional
update: whichever write lands first wins, the other becomes a no-op.
"""

import asyncio
import logging
from datetime import timedelta
from typing import List

from app.config import settings
from app.database import close_db, get_session_maker
from app.models.payment import utcnow
from app.services.ledger_service import TransactionLedger
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


async def sweep(ledger: TransactionLedger, expiry_minutes: int) -> List[str]:
    """Expire payments pushed more than `expiry_minutes` ago."""
    threshold = utcnow() - timedelta(minutes=expiry_minutes)
    expired = await ledger.expire_stale(threshold)
    return [str(txn_id) for txn_id in expired]


@celery_app.task(bind=True, max_retries=3)
def expire_stale_payments(self):
    """Expire pushed payments older than PUSH_EXPIRY_MINUTES."""

    async def run():
        ledger = TransactionLedger(get_session_maker())
        try:
            return await sweep(ledger, settings.push_expiry_minutes)
        finally:
            # Each task run gets a fresh event loop
            await close_db()

    try:
        expired = asyncio.run(run())
        logger.info(f"Expiry sweep expired {len(expired)} payments")
        return {"success": True, "expired": expired}
    except Exception as e:
        logger.error(f"Expiry sweep failed: {e}")
        raise self.retry(exc=e, countdown=30)
