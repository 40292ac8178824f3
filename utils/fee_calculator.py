"""Commission, settlement and operational-cost arithmetic for deals"""

import logging
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, NamedTuple, Optional

from config import Config
from models import CommissionPayer, EnergyMethod
from utils.exception_handler import InvariantViolation

logger = logging.getLogger(__name__)

USDT_PRECISION = Decimal("0.01")
MICRO_PRECISION = Decimal("0.000001")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """Coerce to a finite Decimal without passing through binary floating point"""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, TypeError, ValueError):
            raise InvariantViolation(f"Not a number: {value!r}")
    if not result.is_finite():
        raise InvariantViolation(f"Not a finite number: {value!r}")
    return result


def round2(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(USDT_PRECISION, rounding=ROUND_HALF_UP)


def round6(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(MICRO_PRECISION, rounding=ROUND_HALF_UP)


class CommissionBreakdown(NamedTuple):
    """Attribution of the platform commission between the parties"""
    commission: Decimal
    buyer_share: Decimal
    seller_share: Decimal
    payer: CommissionPayer


class SettlementBreakdown(NamedTuple):
    """Where the deposited amount went; the three parts always sum to the deal amount"""
    released_amount: Decimal
    refunded_amount: Decimal
    commission_collected: Decimal


def calculate_commission(amount: Decimal) -> Decimal:
    """Flat minimum up to the threshold, percentage above it, rounded half-up to cents"""
    amount = to_decimal(amount)
    if amount <= Config.COMMISSION_THRESHOLD:
        return round2(Config.MIN_COMMISSION)
    return max(round2(Config.MIN_COMMISSION), round2(amount * Config.COMMISSION_RATE))


def split_commission(commission: Decimal, payer: CommissionPayer) -> CommissionBreakdown:
    commission = round2(commission)
    if payer == CommissionPayer.BUYER:
        return CommissionBreakdown(commission, commission, ZERO, payer)
    if payer == CommissionPayer.SELLER:
        return CommissionBreakdown(commission, ZERO, commission, payer)
    buyer_share = round2(commission / 2)
    return CommissionBreakdown(commission, buyer_share, commission - buyer_share, payer)


def settle_release(amount: Decimal, commission: Decimal) -> SettlementBreakdown:
    # Commission is always withheld from the multisig balance, whoever bears it
    amount = round6(amount)
    commission = round6(commission)
    return SettlementBreakdown(amount - commission, ZERO, commission)


def settle_refund(amount: Decimal) -> SettlementBreakdown:
    return SettlementBreakdown(ZERO, round6(amount), ZERO)


@dataclass
class OperationalCosts:
    """TRX spent by the service on a deal, priced in USDT at completion"""

    activation_trx_sent: Decimal = ZERO
    activation_tx_fee: Decimal = ZERO
    activation_trx_returned: Decimal = ZERO
    activation_trx_net: Decimal = ZERO
    energy_method: Optional[str] = None
    feesaver_cost_trx: Decimal = ZERO
    fallback_trx_sent: Decimal = ZERO
    fallback_tx_fee: Decimal = ZERO
    fallback_trx_returned: Decimal = ZERO
    fallback_trx_net: Decimal = ZERO
    total_trx_spent: Decimal = ZERO
    total_cost_usd: Optional[Decimal] = None
    trx_price_at_completion: Optional[Decimal] = None
    completion_type: Optional[str] = None

    _TEXT_FIELDS = ("energy_method", "completion_type")

    @classmethod
    def for_activation(cls, activation_cost_trx: Optional[Decimal]) -> "OperationalCosts":
        sent = to_decimal(activation_cost_trx) if activation_cost_trx is not None else Config.MULTISIG_ACTIVATION_TRX
        costs = cls(activation_trx_sent=sent, activation_tx_fee=Config.TRX_TX_FEE)
        costs.recalculate()
        return costs

    def apply_payout(self, energy_method: str, fee_trx: Decimal, trx_returned: Decimal) -> None:
        """Record energy provisioning for the outgoing transaction"""
        self.energy_method = EnergyMethod(energy_method).value
        if self.energy_method == EnergyMethod.FEESAVER.value:
            self.feesaver_cost_trx = to_decimal(fee_trx)
            self.activation_trx_returned = to_decimal(trx_returned)
        elif self.energy_method == EnergyMethod.TRX.value:
            self.fallback_trx_sent = Config.FALLBACK_TRX_AMOUNT
            self.fallback_tx_fee = Config.TRX_TX_FEE
            self.fallback_trx_returned = to_decimal(trx_returned)
        else:
            self.activation_trx_returned = to_decimal(trx_returned)
        self.recalculate()

    def recalculate(self) -> None:
        self.activation_trx_net = self.activation_trx_sent - self.activation_trx_returned
        self.fallback_trx_net = self.fallback_trx_sent - self.fallback_trx_returned
        self.total_trx_spent = round6(
            self.activation_trx_sent
            + self.activation_tx_fee
            + self.fallback_trx_sent
            + self.fallback_tx_fee
            + self.feesaver_cost_trx
            - self.activation_trx_returned
            - self.fallback_trx_returned
        )

    def finalize(self, trx_price: Decimal, completion_type: str) -> None:
        """Stamp the completion-time TRX price; later price moves never re-price the deal"""
        self.recalculate()
        self.trx_price_at_completion = to_decimal(trx_price)
        self.total_cost_usd = round6(self.total_trx_spent * self.trx_price_at_completion)
        self.completion_type = completion_type

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for field in fields(self):
            value = getattr(self, field.name)
            if value is None or field.name in self._TEXT_FIELDS:
                data[field.name] = value
            else:
                data[field.name] = str(value)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OperationalCosts":
        costs = cls()
        for field in fields(cls):
            if not data or field.name not in data or data[field.name] is None:
                continue
            value = data[field.name]
            setattr(costs, field.name, value if field.name in cls._TEXT_FIELDS else Decimal(str(value)))
        return costs
