"""
Payout Retry Service with Exponential Backoff
Re-drives release/refund submissions that failed or are awaiting confirmation
"""

import logging
import random
from typing import Dict

from config import Config
from database import managed_session
from services.deal_repository import DealRepository
from utils.clock import Clock
from utils.exception_handler import DealError

logger = logging.getLogger(__name__)


def compute_backoff_delay(attempt: int, jitter: bool = False) -> int:
    """
    Seconds to wait before payout attempt number `attempt + 1`.

    Doubles from PAYOUT_RETRY_BASE_DELAY and is capped at
    PAYOUT_RETRY_MAX_DELAY; with the defaults ten attempts span roughly a day.
    """
    attempt = max(1, attempt)
    delay = min(Config.PAYOUT_RETRY_BASE_DELAY * (2 ** (attempt - 1)), Config.PAYOUT_RETRY_MAX_DELAY)
    if jitter:
        delay = delay * (0.5 + random.random())
    return int(delay)


class PayoutRetryService:
    """Scheduled sweep over deals whose payout is pending and due"""

    def __init__(self, engine, session_factory, clock: Clock, deals: DealRepository = None):
        self.engine = engine
        self.session_factory = session_factory
        self.clock = clock
        self.deals = deals or DealRepository()

    async def process_due(self) -> Dict[str, int]:
        async with managed_session(self.session_factory) as session:
            due = await self.deals.list_payout_due(session, self.clock.now())

        stats = {"due": len(due), "processed": 0, "errors": 0}
        if not due:
            return stats

        logger.info(f"🔄 PAYOUT_RETRY: {len(due)} deal(s) due")
        for deal_id in due:
            try:
                await self.engine.retry_payout(deal_id)
                stats["processed"] += 1
            except DealError as e:
                stats["errors"] += 1
                logger.warning(f"⚠️ PAYOUT_RETRY: {deal_id} not settled this round: {e.kind.value}: {e.message}")
        return stats
