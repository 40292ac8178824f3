"""
Blockchain port.

Abstract interface over the TRON collaborator that owns key custody: 2-of-3
multisig creation, wallet verification, deposit subscriptions and
release/refund submission. Every call made from inside a deal transition goes
through `call_with_timeout` so a hung collaborator aborts the transition
without a state change.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from config import Config
from models import EnergyMethod
from utils.exception_handler import BlockchainUnavailable, DealError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class TransactionState(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class WalletVerification:
    valid: bool
    reason: Optional[str] = None  # not_found | api_error | invalid_format


@dataclass(frozen=True)
class MultisigResult:
    multisig_address: str
    activation_cost_trx: Decimal


@dataclass(frozen=True)
class PayoutResult:
    """Outcome of a release or refund submission"""
    tx_hash: str
    fee_trx: Decimal
    energy_method: str = EnergyMethod.FEESAVER.value
    trx_returned: Decimal = Decimal("0")
    confirmed: bool = True


@dataclass(frozen=True)
class DepositEvent:
    address: str
    tx_hash: str
    amount: Decimal
    confirmations: int
    from_address: Optional[str] = None


DepositCallback = Callable[[DepositEvent], Awaitable[None]]


class BlockchainPort(ABC):
    """Contract consumed by the deal lifecycle core"""

    @abstractmethod
    async def verify_wallet(self, address: str) -> WalletVerification:
        ...

    @abstractmethod
    async def create_multisig(self, buyer_address: str, seller_address: str, service_address: str) -> MultisigResult:
        ...

    @abstractmethod
    async def subscribe_deposits(self, address: str, callback: DepositCallback) -> None:
        ...

    async def unsubscribe_deposits(self, address: str) -> None:
        """Stop watching an address; adapters without subscriptions may ignore it"""
        return None

    @abstractmethod
    async def release(self, multisig_address: str, to_address: str, amount: Decimal) -> PayoutResult:
        ...

    @abstractmethod
    async def refund(self, multisig_address: str, to_address: str, amount: Decimal) -> PayoutResult:
        ...

    @abstractmethod
    async def get_transaction_status(self, tx_hash: str) -> TransactionState:
        ...


async def call_with_timeout(awaitable: Awaitable[T], operation: str, timeout: Optional[float] = None) -> T:
    """Bound a blockchain call; timeouts and collaborator errors become BlockchainUnavailable"""
    timeout = timeout if timeout is not None else Config.BLOCKCHAIN_CALL_TIMEOUT
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        logger.warning(f"⏱️ BLOCKCHAIN_TIMEOUT: {operation} exceeded {timeout}s")
        raise BlockchainUnavailable(f"{operation} timed out after {timeout}s")
    except DealError:
        raise
    except Exception as e:
        logger.warning(f"⚠️ BLOCKCHAIN_ERROR: {operation} failed: {type(e).__name__}: {e}")
        raise BlockchainUnavailable(f"{operation} failed: {e}") from e
