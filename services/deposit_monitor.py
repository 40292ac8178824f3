"""
Deposit Monitor
Sink for BlockchainPort deposit events. Correlates each deposit with the deal
waiting on that multisig address and drives deposit_detected on the engine.
Delivery from the chain side is at-least-once; duplicates are dropped here and
the engine's compare-and-set makes any that slip through harmless.
"""

import logging
from typing import Optional

from config import Config
from database import managed_session
from models import AuditEventType, DealStatus
from services.audit_logger import AuditLogger
from services.blockchain_port import BlockchainPort, DepositEvent, call_with_timeout
from services.deal_repository import DealRepository
from services.notification_service import NotificationKind, NotificationService
from utils.bounded_set import BoundedSet
from utils.exception_handler import BlockchainUnavailable, DealError, StaleState
from utils.fee_calculator import to_decimal

logger = logging.getLogger(__name__)


class DepositMonitor:
    def __init__(
        self,
        engine,
        blockchain: BlockchainPort,
        session_factory,
        audit: AuditLogger,
        notifier: NotificationService,
        deals: Optional[DealRepository] = None,
        capacity: Optional[int] = None,
    ):
        self.engine = engine
        self.blockchain = blockchain
        self.session_factory = session_factory
        self.audit = audit
        self.notifier = notifier
        self.deals = deals or DealRepository()
        self._seen = BoundedSet(capacity or Config.DEPOSIT_DEDUP_CAPACITY)

    async def start(self) -> int:
        """Re-subscribe every deal still waiting for its deposit (after a restart)"""
        async with managed_session(self.session_factory) as session:
            waiting = await self.deals.list_waiting_for_deposit(session)

        watched = 0
        for deal in waiting:
            try:
                await self.watch(deal.multisig_address)
                watched += 1
            except BlockchainUnavailable as e:
                logger.warning(f"⚠️ DEPOSIT_MONITOR: could not watch {deal.deal_id}: {e.message}")
        logger.info(f"👀 DEPOSIT_MONITOR: watching {watched}/{len(waiting)} multisig address(es)")
        return watched

    async def watch(self, address: str) -> None:
        await call_with_timeout(self.blockchain.subscribe_deposits(address, self.handle_deposit), "subscribe_deposits")

    async def handle_deposit(self, event: DepositEvent) -> bool:
        """Returns True when the event moved a deal to locked"""
        if event.confirmations < 1:
            logger.debug(f"⏳ DEPOSIT_UNCONFIRMED: {event.tx_hash} to {event.address}")
            return False

        async with managed_session(self.session_factory) as session:
            deal = await self.deals.get_by_multisig(session, event.address, DealStatus.WAITING_FOR_DEPOSIT)
        if deal is None:
            logger.debug(f"🔍 DEPOSIT_UNMATCHED: {event.tx_hash} to {event.address}")
            return False

        key = f"{deal.deal_id}:{event.tx_hash}"
        if not self._seen.add(key):
            logger.debug(f"🔁 DEPOSIT_DUPLICATE: {key}")
            return False

        amount = to_decimal(event.amount)
        if amount < deal.amount:
            logger.warning(f"⚠️ DEPOSIT_INSUFFICIENT: {deal.deal_id} received {amount} of {deal.amount}")
            await self.audit.record_detached(
                AuditEventType.DEPOSIT_INSUFFICIENT,
                deal_id=deal.deal_id,
                user_id=deal.buyer_id,
                description=f"Received {amount}, expected {deal.amount}",
                extra_data={"tx_hash": event.tx_hash, "received": str(amount), "expected": str(deal.amount)},
            )
            self.notifier.send(deal.buyer_id, NotificationKind.DEPOSIT_INSUFFICIENT, {
                "deal_id": deal.deal_id, "received": str(amount), "expected": str(deal.amount),
            })
            return False

        try:
            await self.engine.deposit_detected(
                deal.deal_id,
                event.tx_hash,
                amount,
                from_address=event.from_address,
                confirmations=event.confirmations,
            )
        except StaleState:
            logger.debug(f"🔁 DEPOSIT_STALE: {deal.deal_id} already moved on")
            return False
        except DealError:
            # Let a redelivery try again
            self._seen.discard(key)
            raise
        return True
