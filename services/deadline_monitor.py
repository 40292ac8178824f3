"""
Deadline Monitor
Periodic sweep (scheduled by DealScheduler) over deadlines:
- unfunded deals past their deadline expire
- submitted work past deadline + acceptance window is auto-released
- funded deals past their deadline get a single warning to both parties

Each tick re-reads state, so a crash between ticks loses nothing.
"""

import logging
from typing import Dict

from config import Config
from database import managed_session
from models import AuditEventType, DealStatus
from services.audit_logger import AuditLogger
from services.deal_repository import DealRepository
from services.notification_service import NotificationKind, NotificationService
from utils.clock import Clock
from utils.exception_handler import DealError

logger = logging.getLogger(__name__)


class DeadlineMonitor:
    def __init__(
        self,
        engine,
        session_factory,
        clock: Clock,
        audit: AuditLogger,
        notifier: NotificationService,
        deals: DealRepository = None,
    ):
        self.engine = engine
        self.session_factory = session_factory
        self.clock = clock
        self.audit = audit
        self.notifier = notifier
        self.deals = deals or DealRepository()

    async def sweep(self) -> Dict[str, int]:
        now = self.clock.now()
        async with managed_session(self.session_factory) as session:
            expirable = await self.deals.list_expirable(session, now)
            auto_release = await self.deals.list_auto_release_due(session, now, Config.AUTO_RELEASE_WINDOW_HOURS)

        stats = {"expired": 0, "auto_released": 0, "warned": 0, "errors": 0}

        for deal_id in expirable + auto_release:
            try:
                deal = await self.engine.deadline_expired(deal_id)
            except DealError as e:
                stats["errors"] += 1
                logger.warning(f"⚠️ DEADLINE_SWEEP: {deal_id} skipped: {e.kind.value}: {e.message}")
                continue
            if deal is None or not deal.is_terminal:
                continue
            if deal.status_enum == DealStatus.EXPIRED:
                stats["expired"] += 1
            else:
                stats["auto_released"] += 1

        stats["warned"] = await self._send_warnings(now)

        if any(stats.values()):
            logger.info(
                f"⏰ DEADLINE_SWEEP: expired={stats['expired']} auto_released={stats['auto_released']} "
                f"warned={stats['warned']} errors={stats['errors']}"
            )
        return stats

    async def _send_warnings(self, now) -> int:
        warned = []
        async with managed_session(self.session_factory) as session:
            for deal in await self.deals.list_deadline_warnings(session, now):
                if not await self.deals.mark_deadline_warning_sent(session, deal.deal_id):
                    continue
                await self.audit.record(
                    session,
                    AuditEventType.DEADLINE_WARNING,
                    deal_id=deal.deal_id,
                    description=f"Deadline {deal.deadline.isoformat()} passed in {deal.status}",
                )
                warned.append(deal)

        for deal in warned:
            self.notifier.send_many(deal.participant_ids(), NotificationKind.DEADLINE_WARNING, {
                "deal_id": deal.deal_id,
                "product_name": deal.product_name,
                "deadline": deal.deadline.strftime("%Y-%m-%d %H:%M UTC"),
            })
        return len(warned)
