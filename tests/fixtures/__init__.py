"""
Test Fixtures Package
Frozen time, a scriptable blockchain collaborator, and notification capture
"""

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from models import EnergyMethod
from services.blockchain_port import (
    BlockchainPort, DepositCallback, DepositEvent, MultisigResult, PayoutResult,
    TransactionState, WalletVerification,
)
from services.notification_service import NotificationKind, NotificationPort
from services.price_service import PriceService
from utils.clock import Clock

__all__ = [
    'FrozenClock',
    'FakeBlockchain',
    'RecordingNotifier',
    'FixedPriceService',
]


class FrozenClock(Clock):
    """Clock that only moves when a test advances it"""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2025, 1, 1, 12, 0, 0)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


class FakeBlockchain(BlockchainPort):
    """
    In-memory BlockchainPort.

    Every call is appended to `calls`. Failures are scripted per operation:
    set `payout_error` to an exception instance to make release/refund raise,
    `payout_confirmed = False` to return unconfirmed transactions, and
    `tx_states[hash]` to steer get_transaction_status. Operations named in
    `hang_on` never return, so the caller's timeout has to fire.
    """

    def __init__(self):
        self.calls: List[Tuple[str, tuple]] = []
        self.invalid_wallets: Dict[str, str] = {}
        self.multisig_error: Optional[Exception] = None
        self.payout_error: Optional[Exception] = None
        self.payout_confirmed = True
        self.energy_method = EnergyMethod.FEESAVER.value
        self.fee_trx = Decimal("2.5")
        self.trx_returned = Decimal("0")
        self.activation_cost_trx = Decimal("5")
        self.tx_states: Dict[str, TransactionState] = {}
        self.hang_on: Set[str] = set()
        self.subscriptions: Dict[str, DepositCallback] = {}
        self._multisig_counter = 0
        self._tx_counter = 0

    async def _maybe_hang(self, name: str) -> None:
        if name in self.hang_on:
            await asyncio.Event().wait()

    def calls_named(self, name: str) -> List[tuple]:
        return [args for call_name, args in self.calls if call_name == name]

    async def verify_wallet(self, address: str) -> WalletVerification:
        self.calls.append(("verify_wallet", (address,)))
        await self._maybe_hang("verify_wallet")
        reason = self.invalid_wallets.get(address)
        if reason is not None:
            return WalletVerification(valid=False, reason=reason)
        return WalletVerification(valid=True)

    async def create_multisig(self, buyer_address: str, seller_address: str, service_address: str) -> MultisigResult:
        self.calls.append(("create_multisig", (buyer_address, seller_address, service_address)))
        await self._maybe_hang("create_multisig")
        if self.multisig_error is not None:
            raise self.multisig_error
        self._multisig_counter += 1
        return MultisigResult(
            multisig_address=f"TMultisig{self._multisig_counter:024d}",
            activation_cost_trx=self.activation_cost_trx,
        )

    async def subscribe_deposits(self, address: str, callback: DepositCallback) -> None:
        self.calls.append(("subscribe_deposits", (address,)))
        self.subscriptions[address] = callback

    async def unsubscribe_deposits(self, address: str) -> None:
        self.calls.append(("unsubscribe_deposits", (address,)))
        self.subscriptions.pop(address, None)

    async def _payout(self, name: str, multisig_address: str, to_address: str, amount: Decimal) -> PayoutResult:
        self.calls.append((name, (multisig_address, to_address, amount)))
        await self._maybe_hang(name)
        if self.payout_error is not None:
            raise self.payout_error
        self._tx_counter += 1
        tx_hash = f"{name}_tx_{self._tx_counter}"
        return PayoutResult(
            tx_hash=tx_hash,
            fee_trx=self.fee_trx,
            energy_method=self.energy_method,
            trx_returned=self.trx_returned,
            confirmed=self.payout_confirmed,
        )

    async def release(self, multisig_address: str, to_address: str, amount: Decimal) -> PayoutResult:
        return await self._payout("release", multisig_address, to_address, amount)

    async def refund(self, multisig_address: str, to_address: str, amount: Decimal) -> PayoutResult:
        return await self._payout("refund", multisig_address, to_address, amount)

    async def get_transaction_status(self, tx_hash: str) -> TransactionState:
        self.calls.append(("get_transaction_status", (tx_hash,)))
        return self.tx_states.get(tx_hash, TransactionState.CONFIRMED)

    async def push_deposit(
        self, address: str, tx_hash: str, amount: Any, confirmations: int = 1, from_address: Optional[str] = None
    ):
        """Deliver a deposit to the subscribed callback, as the chain watcher would"""
        callback = self.subscriptions[address]
        return await callback(DepositEvent(
            address=address,
            tx_hash=tx_hash,
            amount=Decimal(str(amount)),
            confirmations=confirmations,
            from_address=from_address,
        ))


class RecordingNotifier(NotificationPort):
    """Captures deliveries instead of talking to Telegram"""

    def __init__(self, fail_for: Optional[set] = None):
        self.sent: List[Tuple[int, NotificationKind, Dict[str, Any]]] = []
        self.fail_for = fail_for or set()

    async def deliver(self, user_id: int, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        if user_id in self.fail_for:
            raise ConnectionError(f"chat {user_id} unreachable")
        self.sent.append((user_id, kind, payload))

    def kinds_for(self, user_id: int) -> List[NotificationKind]:
        return [kind for recipient, kind, _ in self.sent if recipient == user_id]

    def of_kind(self, kind: NotificationKind) -> List[Tuple[int, Dict[str, Any]]]:
        return [(recipient, payload) for recipient, sent_kind, payload in self.sent if sent_kind == kind]


class FixedPriceService(PriceService):
    """PriceService whose provider always answers with the same rate"""

    def __init__(self, clock: Clock, price: Decimal = Decimal("0.25")):
        super().__init__(clock, api_url="http://price.invalid", cache_seconds=300)
        self.fixed_price = price
        self.fetches = 0

    async def _fetch_price(self) -> Decimal:
        self.fetches += 1
        return self.fixed_price
