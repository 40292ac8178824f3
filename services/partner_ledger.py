"""
Partner ledger.

`compute_platform_stats` is a pure function over a platform's deals. The
`PartnerLedger` service recomputes it on lifecycle events and stores the
result on the platform row, so dashboards read without aggregating. It is the
only writer of platform stats outside admin CRUD, serialized per platform.
"""

import logging
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, NamedTuple, Optional

from sqlalchemy import select

from database import managed_session
from models import Deal, DealStatus, Platform, TERMINAL_STATUSES
from services.deal_repository import DealRepository
from services.event_bus import DomainEvents, EventBus
from services.user_repository import UserRepository
from utils.clock import Clock
from utils.fee_calculator import MICRO_PRECISION, OperationalCosts, ZERO
from utils.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)

SETTLED_STATUSES = (DealStatus.COMPLETED.value, DealStatus.RESOLVED.value)


class LedgerEntry(NamedTuple):
    """Settlement figures of one completed or resolved deal"""
    amount: Decimal
    commission: Decimal
    total_trx_spent: Decimal
    trx_price_at_completion: Decimal


@dataclass
class PlatformStats:
    total_volume: Decimal = ZERO
    total_commission: Decimal = ZERO
    total_trx_spent: Decimal = ZERO
    total_trx_spent_usdt: Decimal = ZERO
    net_profit: Decimal = ZERO
    payout: Decimal = ZERO
    platform_pure_profit: Decimal = ZERO
    total_users: int = 0
    total_deals: int = 0
    active_deals: int = 0
    completed_deals: int = 0
    cancelled_deals: int = 0
    disputed_deals: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {key: (str(value) if isinstance(value, Decimal) else value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PlatformStats":
        stats = cls()
        for key, value in (data or {}).items():
            if not hasattr(stats, key):
                continue
            default = getattr(stats, key)
            setattr(stats, key, Decimal(str(value)) if isinstance(default, Decimal) else int(value))
        return stats


def ledger_entry_from_deal(deal: Deal) -> LedgerEntry:
    costs = OperationalCosts.from_dict(deal.operational_costs)
    collected = deal.commission_collected if deal.commission_collected is not None else ZERO
    return LedgerEntry(
        amount=deal.amount,
        commission=collected,
        total_trx_spent=costs.total_trx_spent,
        trx_price_at_completion=costs.trx_price_at_completion or ZERO,
    )


def compute_platform_stats(entries: Iterable[LedgerEntry], commission_percent: Decimal) -> PlatformStats:
    """Aggregate settled deals; TRX costs stay priced at each deal's completion rate"""
    stats = PlatformStats()
    for entry in entries:
        stats.total_volume += entry.amount
        stats.total_commission += entry.commission
        stats.total_trx_spent += entry.total_trx_spent
        stats.total_trx_spent_usdt += entry.total_trx_spent * entry.trx_price_at_completion

    stats.total_trx_spent_usdt = stats.total_trx_spent_usdt.quantize(MICRO_PRECISION, rounding=ROUND_HALF_UP)
    stats.net_profit = stats.total_commission - stats.total_trx_spent_usdt
    payout = stats.net_profit * Decimal(commission_percent) / Decimal(100)
    stats.payout = max(ZERO, payout).quantize(MICRO_PRECISION, rounding=ROUND_HALF_UP)
    stats.platform_pure_profit = stats.net_profit - stats.payout
    return stats


class PartnerLedger:
    def __init__(self, session_factory, clock: Clock, locks: KeyedLock,
                 deals: Optional[DealRepository] = None, users: Optional[UserRepository] = None):
        self.session_factory = session_factory
        self.clock = clock
        self.locks = locks
        self.deals = deals or DealRepository()
        self.users = users or UserRepository()

    def register(self, bus: EventBus) -> None:
        bus.subscribe(DomainEvents.DEAL_CREATED, self.handle_deal_event)
        bus.subscribe(DomainEvents.DEAL_TERMINATED, self.handle_deal_event)

    async def handle_deal_event(self, data: Dict[str, Any]) -> None:
        platform_code = data.get("platform_code")
        if platform_code:
            await self.recompute(platform_code)

    async def recompute(self, platform_code: str) -> Optional[PlatformStats]:
        """Idempotent full recomputation; safe to call at any time"""
        async with self.locks.acquire(f"platform:{platform_code}"):
            async with managed_session(self.session_factory) as session:
                result = await session.execute(select(Platform).where(Platform.code == platform_code))
                platform = result.scalar_one_or_none()
                if platform is None:
                    logger.warning(f"⚠️ PARTNER_LEDGER: unknown platform {platform_code}")
                    return None

                deals = await self.deals.list_for_platform(session, platform_code)
                settled = [ledger_entry_from_deal(d) for d in deals if d.status in SETTLED_STATUSES]
                stats = compute_platform_stats(settled, platform.commission_percent)

                stats.total_users = await self.users.count_for_platform(session, platform_code)
                stats.total_deals = len(deals)
                stats.completed_deals = len(settled)
                stats.active_deals = sum(1 for d in deals if DealStatus(d.status) not in TERMINAL_STATUSES)
                stats.cancelled_deals = sum(
                    1 for d in deals if d.status in (DealStatus.CANCELLED.value, DealStatus.EXPIRED.value)
                )
                stats.disputed_deals = sum(
                    1 for d in deals if d.status in (DealStatus.DISPUTE.value, DealStatus.RESOLVED.value)
                )

                platform.stats = stats.to_dict()
                platform.stats_updated_at = self.clock.now()

        logger.info(
            f"📊 PARTNER_LEDGER: {platform_code} volume={stats.total_volume} "
            f"net={stats.net_profit} payout={stats.payout}"
        )
        return stats

    async def get_stats(self, platform_code: str) -> Optional[PlatformStats]:
        """Lock-free read of the denormalized stats"""
        async with managed_session(self.session_factory) as session:
            result = await session.execute(select(Platform.stats).where(Platform.code == platform_code))
            row = result.one_or_none()
        if row is None:
            return None
        return PlatformStats.from_dict(row[0])
