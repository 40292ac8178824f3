"""
Deal Lifecycle Core wiring.

Components are constructed once at process start and own their state
(price cache, lock registry, dedup set); nothing here is a module singleton.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config import Config
from services.admin_service import AdminService
from services.audit_logger import AuditLogger
from services.blockchain_port import BlockchainPort
from services.counter_service import CounterService
from services.deadline_monitor import DeadlineMonitor
from services.deal_lifecycle_engine import DealLifecycleEngine
from services.deal_repository import DealRepository
from services.deposit_monitor import DepositMonitor
from services.dispute_engine import DisputeEngine
from services.dispute_repository import DisputeRepository
from services.event_bus import EventBus
from services.notification_service import NotificationPort, NotificationService
from services.partner_ledger import PartnerLedger
from services.partner_service import PartnerService
from services.payout_retry_service import PayoutRetryService
from services.price_service import PriceService
from services.session_store import SessionStore
from services.user_repository import UserRepository
from utils.clock import Clock, SystemClock
from utils.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)


@dataclass
class DealLifecycleCore:
    session_factory: object
    clock: Clock
    locks: KeyedLock
    event_bus: EventBus
    audit: AuditLogger
    counter: CounterService
    prices: PriceService
    blockchain: BlockchainPort
    notifier: NotificationService
    sessions: SessionStore
    deals: DealRepository
    users: UserRepository
    disputes: DisputeRepository
    engine: DealLifecycleEngine
    dispute_engine: DisputeEngine
    deposit_monitor: DepositMonitor
    deadline_monitor: DeadlineMonitor
    payout_retry: PayoutRetryService
    ledger: PartnerLedger
    admin: AdminService
    partners: PartnerService

    async def shutdown(self) -> None:
        await self.notifier.drain()
        self.event_bus.clear()


def build_container(
    session_factory,
    blockchain: BlockchainPort,
    notification_port: NotificationPort,
    clock: Optional[Clock] = None,
    prices: Optional[PriceService] = None,
) -> DealLifecycleCore:
    clock = clock or SystemClock()
    locks = KeyedLock(Config.LOCK_REGISTRY_MAX_KEYS)
    event_bus = EventBus()
    audit = AuditLogger(session_factory, clock)
    counter = CounterService(session_factory)
    prices = prices or PriceService(clock)
    notifier = NotificationService(notification_port)
    deals = DealRepository()
    users = UserRepository()
    disputes = DisputeRepository()

    engine = DealLifecycleEngine(
        session_factory, clock, locks, counter, blockchain, notifier, prices, event_bus, audit,
        deals=deals, users=users, disputes=disputes,
    )
    deposit_monitor = DepositMonitor(engine, blockchain, session_factory, audit, notifier, deals=deals)
    engine.set_deposit_monitor(deposit_monitor)

    dispute_engine = DisputeEngine(engine, session_factory, clock, locks, audit, disputes=disputes, deals=deals)
    ledger = PartnerLedger(session_factory, clock, locks, deals=deals, users=users)
    ledger.register(event_bus)

    core = DealLifecycleCore(
        session_factory=session_factory,
        clock=clock,
        locks=locks,
        event_bus=event_bus,
        audit=audit,
        counter=counter,
        prices=prices,
        blockchain=blockchain,
        notifier=notifier,
        sessions=SessionStore(session_factory, clock),
        deals=deals,
        users=users,
        disputes=disputes,
        engine=engine,
        dispute_engine=dispute_engine,
        deposit_monitor=deposit_monitor,
        deadline_monitor=DeadlineMonitor(engine, session_factory, clock, audit, notifier, deals=deals),
        payout_retry=PayoutRetryService(engine, session_factory, clock, deals=deals),
        ledger=ledger,
        admin=AdminService(engine, dispute_engine, session_factory, clock, audit, notifier, users=users, deals=deals),
        partners=PartnerService(session_factory, clock, ledger, audit, deals=deals),
    )
    logger.info("🧩 DLC container wired")
    return core
