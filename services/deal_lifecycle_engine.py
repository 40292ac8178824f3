"""
Deal Lifecycle Engine
=====================

The deal state machine. Every transition follows the same shape:

1. take the per-deal lock (advisory, in-process)
2. read a snapshot and check guards (status first, then caller)
3. perform blockchain calls with a bounded timeout, outside any transaction
4. in one transaction: compare-and-set on (deal_id, expected status), side
   writes (active-deal sentinel, dispute, stats) and the audit entry
5. fire-and-forget notifications and domain events, still under the lock

A failed compare-and-set aborts with StaleState and leaves nothing behind.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from database import managed_session
from models import (
    AuditEventType, CommissionPayer, CompletionType, Deal, DealAsset, DealRole, DealStatus,
    Dispute, DisputeDecision, PayoutAction, PRE_MULTISIG_STATUSES, TERMINAL_STATUSES, User,
)
from services.audit_logger import AuditLogger
from services.blockchain_port import BlockchainPort, PayoutResult, TransactionState, call_with_timeout
from services.counter_service import CounterService
from services.deal_repository import DealRepository
from services.dispute_repository import DisputeRepository
from services.event_bus import DomainEvents, EventBus
from services.notification_service import NotificationKind, NotificationService
from services.payout_retry_service import compute_backoff_delay
from services.price_service import PriceService
from services.user_repository import UserRepository
from utils.clock import Clock
from utils.deal_state_machine import DealEvent, DealStateValidator, FORCE_TARGETS_REQUIRING_DEPOSIT
from utils.exception_handler import (
    BlockchainUnavailable, Conflict, DealNotFound, DepositInsufficient, DisputeAlreadyExists,
    InvariantViolation, NotAuthorized, StaleState, UserBlacklisted, UserHasActiveDeal, WalletInvalid,
    audit_fatal_errors,
)
from utils.fee_calculator import (
    CommissionBreakdown, OperationalCosts, ZERO, calculate_commission, round6, settle_refund,
    settle_release, split_commission, to_decimal,
)
from utils.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)

_SETTLEMENT_TARGETS = {
    CompletionType.CONFIRMED: DealStatus.COMPLETED,
    CompletionType.AUTO_RELEASE: DealStatus.COMPLETED,
    CompletionType.DISPUTE_RELEASE: DealStatus.RESOLVED,
    CompletionType.DISPUTE_REFUND: DealStatus.RESOLVED,
}

_SETTLEMENT_EVENTS = {
    CompletionType.CONFIRMED: DealEvent.CONFIRM,
    CompletionType.AUTO_RELEASE: DealEvent.AUTO_RELEASE,
    CompletionType.DISPUTE_RELEASE: DealEvent.RESOLVE,
    CompletionType.DISPUTE_REFUND: DealEvent.RESOLVE,
}

_FORCE_NOTIFICATIONS = {
    DealStatus.CANCELLED: NotificationKind.CANCELLED,
    DealStatus.EXPIRED: NotificationKind.EXPIRED,
    DealStatus.COMPLETED: NotificationKind.COMPLETED,
}


def deal_lock_key(deal_id: str) -> str:
    return f"deal:{deal_id}"


def user_lock_key(telegram_id: int) -> str:
    return f"user:{telegram_id}"


def _coerce_enum(enum_cls, value, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise InvariantViolation(f"Invalid {field}: {value}")


class DealLifecycleEngine:
    """Owns every deal status change"""

    def __init__(
        self,
        session_factory,
        clock: Clock,
        locks: KeyedLock,
        counter: CounterService,
        blockchain: BlockchainPort,
        notifier: NotificationService,
        prices: PriceService,
        event_bus: EventBus,
        audit: AuditLogger,
        deals: Optional[DealRepository] = None,
        users: Optional[UserRepository] = None,
        disputes: Optional[DisputeRepository] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.locks = locks
        self.counter = counter
        self.blockchain = blockchain
        self.notifier = notifier
        self.prices = prices
        self.event_bus = event_bus
        self.audit = audit
        self.deals = deals or DealRepository()
        self.users = users or UserRepository()
        self.disputes = disputes or DisputeRepository()
        self.deposit_monitor = None

    def set_deposit_monitor(self, monitor) -> None:
        self.deposit_monitor = monitor

    # ──────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────

    async def _load(self, deal_id: str) -> Deal:
        async with managed_session(self.session_factory) as session:
            deal = await self.deals.get(session, deal_id)
        if deal is None:
            raise DealNotFound(deal_id)
        return deal

    async def _cas(
        self, session: AsyncSession, deal: Deal, new_status: Optional[DealStatus] = None, **values: Any
    ) -> None:
        values.setdefault("updated_at", self.clock.now())
        if not await self.deals.compare_and_set(session, deal.deal_id, deal.status, new_status, **values):
            raise StaleState(f"Deal {deal.deal_id} moved away from {deal.status}")

    async def _release_claims(self, session: AsyncSession, deal: Deal) -> None:
        for telegram_id in deal.participant_ids():
            await self.users.release_active_deal(session, telegram_id, deal.deal_id)

    @staticmethod
    def _payload(deal: Deal, **extra: Any) -> Dict[str, Any]:
        payload = {
            "deal_id": deal.deal_id,
            "product_name": deal.product_name,
            "amount": str(deal.amount),
            "asset": deal.asset,
            "status": deal.status,
        }
        payload.update(extra)
        return payload

    def _notify(self, recipients: Iterable[int], kind: NotificationKind, deal: Deal, **extra: Any) -> None:
        self.notifier.send_many(list(recipients), kind, self._payload(deal, **extra))

    async def _deal_terminated(self, deal: Deal, status: DealStatus) -> None:
        await self.event_bus.emit(DomainEvents.DEAL_TERMINATED, {
            "deal_id": deal.deal_id,
            "status": status.value,
            "platform_code": deal.platform_code,
        })

    async def _stop_watching(self, deal: Deal) -> None:
        if not deal.multisig_address:
            return
        try:
            await call_with_timeout(
                self.blockchain.unsubscribe_deposits(deal.multisig_address), "unsubscribe_deposits"
            )
        except BlockchainUnavailable as e:
            logger.warning(f"⚠️ DEPOSIT_UNSUBSCRIBE_FAILED: {deal.deal_id}: {e.message}")

    @staticmethod
    def _require_party(deal: Deal, user_id: int, role: Optional[DealRole] = None) -> None:
        if role == DealRole.BUYER and user_id != deal.buyer_id:
            raise NotAuthorized(f"Only the buyer of {deal.deal_id} may do this")
        if role == DealRole.SELLER and user_id != deal.seller_id:
            raise NotAuthorized(f"Only the seller of {deal.deal_id} may do this")
        if role is None and user_id not in deal.participant_ids():
            raise NotAuthorized(f"User {user_id} is not a party to {deal.deal_id}")

    @staticmethod
    def _require_admin(user_id: int) -> None:
        if not Config.is_admin(user_id):
            raise NotAuthorized(f"User {user_id} is not an admin")

    async def _verify_wallet(self, address: str) -> None:
        address = (address or "").strip()
        if not address:
            raise WalletInvalid("bad_format", address)
        verification = await call_with_timeout(self.blockchain.verify_wallet(address), "verify_wallet")
        if not verification.valid:
            logger.info(f"👛 WALLET_REJECTED: {address} ({verification.reason})")
            raise WalletInvalid(verification.reason or "api_error", address)

    # ──────────────────────────────────────────────
    # Users and queries
    # ──────────────────────────────────────────────

    async def register_user(self, telegram_id: int, username: Optional[str] = None) -> User:
        async with managed_session(self.session_factory) as session:
            return await self.users.register(session, telegram_id, username, self.clock.now())

    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        async with managed_session(self.session_factory) as session:
            return await self.deals.get(session, deal_id)

    async def get_user_deals(
        self, telegram_id: int, status: Optional[Union[DealStatus, str]] = None, limit: int = 20
    ) -> List[Deal]:
        async with managed_session(self.session_factory) as session:
            return await self.deals.list_for_user(session, telegram_id, status=status, limit=limit)

    @staticmethod
    def get_commission_breakdown(deal: Deal) -> CommissionBreakdown:
        return CommissionBreakdown(
            commission=deal.commission,
            buyer_share=deal.buyer_commission,
            seller_share=deal.seller_commission,
            payer=CommissionPayer(deal.commission_type),
        )

    # ──────────────────────────────────────────────
    # Creation and funding
    # ──────────────────────────────────────────────

    @audit_fatal_errors
    async def create_deal(
        self,
        creator_id: int,
        counterparty_id: int,
        creator_role: Union[DealRole, str],
        product_name: str,
        description: Optional[str],
        amount: Any,
        commission_type: Union[CommissionPayer, str],
        deadline_hours: int,
        asset: Union[DealAsset, str] = DealAsset.USDT,
        creator_wallet: Optional[str] = None,
    ) -> Deal:
        role = _coerce_enum(DealRole, creator_role, "creator role")
        payer = _coerce_enum(CommissionPayer, commission_type, "commission type")
        asset = _coerce_enum(DealAsset, asset, "asset")
        amount = to_decimal(amount)
        product_name = (product_name or "").strip()

        if creator_id == counterparty_id:
            raise InvariantViolation("Buyer and seller must be different users")
        if not product_name:
            raise InvariantViolation("Product name is required")
        if amount != round6(amount):
            raise InvariantViolation(f"Amount {amount} has more than 6 fractional digits")
        if amount < Config.MIN_DEAL_AMOUNT:
            raise InvariantViolation(f"Amount {amount} is below the minimum {Config.MIN_DEAL_AMOUNT}")
        if not Config.MIN_DEADLINE_HOURS <= deadline_hours <= Config.MAX_DEADLINE_HOURS:
            raise InvariantViolation(
                f"Deadline must be {Config.MIN_DEADLINE_HOURS}-{Config.MAX_DEADLINE_HOURS} hours, got {deadline_hours}"
            )
        if role == DealRole.BUYER and not creator_wallet:
            raise InvariantViolation("A buyer creating a deal must provide a payout wallet")

        buyer_id, seller_id = (creator_id, counterparty_id) if role == DealRole.BUYER else (counterparty_id, creator_id)

        async with self.locks.acquire_many([user_lock_key(creator_id), user_lock_key(counterparty_id)]):
            async with managed_session(self.session_factory) as session:
                creator = await self.users.get(session, creator_id)
                counterparty = await self.users.get(session, counterparty_id)

            for user_id, user in ((creator_id, creator), (counterparty_id, counterparty)):
                if user is None:
                    raise InvariantViolation(f"User {user_id} is not registered")
                if user.blacklisted:
                    raise UserBlacklisted(user_id)
                if user.active_deal_id:
                    raise UserHasActiveDeal(user_id, user.active_deal_id)
            if creator.username and counterparty.username and creator.username.lower() == counterparty.username.lower():
                raise InvariantViolation("Creator and counterparty share the same handle")

            if creator_wallet:
                creator_wallet = creator_wallet.strip()
                await self._verify_wallet(creator_wallet)

            buyer, seller = (creator, counterparty) if role == DealRole.BUYER else (counterparty, creator)
            platform_code = buyer.platform_code or seller.platform_code

            # Counter value is allocated before any write that references the deal
            deal_id = await self.counter.next_deal_id()

            commission = calculate_commission(amount)
            breakdown = split_commission(commission, payer)
            target = DealStatus.WAITING_FOR_SELLER_WALLET if role == DealRole.BUYER else DealStatus.WAITING_FOR_BUYER_WALLET
            DealStateValidator.validate(DealEvent.CREATE, DealStatus.CREATED, target)
            now = self.clock.now()

            async with managed_session(self.session_factory) as session:
                for user_id in (creator_id, counterparty_id):
                    if not await self.users.claim_active_deal(session, user_id, deal_id):
                        logger.warning(f"⚠️ ACTIVE_DEAL_CLAIM_LOST: user {user_id} for {deal_id}")
                        raise UserHasActiveDeal(user_id)
                await self.users.touch_activity(session, creator_id, now)

                deal = Deal(
                    deal_id=deal_id,
                    buyer_id=buyer_id,
                    seller_id=seller_id,
                    creator_role=role.value,
                    product_name=product_name[:200],
                    description=description,
                    asset=asset.value,
                    amount=amount,
                    commission=breakdown.commission,
                    commission_type=payer.value,
                    buyer_commission=breakdown.buyer_share,
                    seller_commission=breakdown.seller_share,
                    platform_code=platform_code,
                    buyer_address=creator_wallet if role == DealRole.BUYER else None,
                    seller_address=creator_wallet if role == DealRole.SELLER else None,
                    status=DealStatus.CREATED.value,
                    deadline=now + timedelta(hours=deadline_hours),
                    created_at=now,
                    updated_at=now,
                )
                await self.deals.add(session, deal)
                await self._cas(session, deal, target)

                if platform_code:
                    for user_id in (buyer_id, seller_id):
                        if await self.users.link_platform(session, user_id, platform_code):
                            logger.info(f"🔗 PLATFORM_LINKED: user {user_id} -> {platform_code}")

                await self.audit.record(
                    session,
                    AuditEventType.DEAL_CREATED,
                    deal_id=deal_id,
                    user_id=creator_id,
                    description=f"{role.value} {creator_id} created {deal_id} with {counterparty_id}",
                    extra_data={
                        "amount": str(amount),
                        "commission": str(breakdown.commission),
                        "commission_type": payer.value,
                        "status": target.value,
                        "platform_code": platform_code,
                    },
                )

            deal = await self._load(deal_id)
            logger.info(
                f"🤝 DEAL_CREATED: {deal_id} buyer={buyer_id} seller={seller_id} "
                f"amount={amount} {asset.value} commission={breakdown.commission} ({payer.value})"
            )
            self._notify((buyer_id, seller_id), NotificationKind.DEAL_CREATED, deal)
            if platform_code:
                await self.event_bus.emit(DomainEvents.DEAL_CREATED, {
                    "deal_id": deal_id, "platform_code": platform_code,
                })
            return deal

    @audit_fatal_errors
    async def provide_wallet(self, deal_id: str, user_id: int, address: str) -> Deal:
        async with self.locks.acquire(deal_lock_key(deal_id)):
            deal = await self._load(deal_id)
            current = deal.status_enum
            DealStateValidator.require(DealEvent.PROVIDE_WALLET, current)

            if current == DealStatus.WAITING_FOR_SELLER_WALLET:
                self._require_party(deal, user_id, DealRole.SELLER)
                counterpart_address = deal.buyer_address
            else:
                self._require_party(deal, user_id, DealRole.BUYER)
                counterpart_address = deal.seller_address

            address = (address or "").strip()
            if counterpart_address and address == counterpart_address:
                raise InvariantViolation("Payout address must differ from the counterparty's")
            await self._verify_wallet(address)

            values: Dict[str, Any] = {}
            if current == DealStatus.WAITING_FOR_SELLER_WALLET:
                values["seller_address"] = address
                buyer_address, seller_address = deal.buyer_address, address
            else:
                values["buyer_address"] = address
                buyer_address, seller_address = address, deal.seller_address

            if buyer_address and seller_address:
                target = DealStatus.WAITING_FOR_DEPOSIT
                multisig = await call_with_timeout(
                    self.blockchain.create_multisig(buyer_address, seller_address, Config.SERVICE_WALLET_ADDRESS),
                    "create_multisig",
                )
                values["multisig_address"] = multisig.multisig_address
                values["activation_cost_trx"] = to_decimal(multisig.activation_cost_trx)
            else:
                target = DealStatus.WAITING_FOR_SELLER_WALLET
            DealStateValidator.validate(DealEvent.PROVIDE_WALLET, current, target)

            async with managed_session(self.session_factory) as session:
                await self._cas(session, deal, target, **values)
                await self.audit.record(
                    session,
                    AuditEventType.WALLET_PROVIDED,
                    deal_id=deal_id,
                    user_id=user_id,
                    description=f"{current.value} -> {target.value}",
                    extra_data={"address": address, "multisig_address": values.get("multisig_address")},
                )

            deal = await self._load(deal_id)
            logger.info(f"👛 WALLET_PROVIDED: {deal_id} by {user_id} -> {target.value}")

            if target == DealStatus.WAITING_FOR_DEPOSIT:
                if self.deposit_monitor is not None:
                    try:
                        await self.deposit_monitor.watch(deal.multisig_address)
                    except BlockchainUnavailable as e:
                        # Picked up again by DepositMonitor.start() on the next boot
                        logger.warning(f"⚠️ DEPOSIT_WATCH_FAILED: {deal_id}: {e.message}")
                self._notify(
                    deal.participant_ids(), NotificationKind.AWAITING_DEPOSIT, deal,
                    multisig_address=deal.multisig_address,
                )
            return deal

    @audit_fatal_errors
    async def deposit_detected(
        self,
        deal_id: str,
        tx_hash: str,
        amount: Any,
        from_address: Optional[str] = None,
        confirmations: int = 1,
    ) -> Deal:
        amount = to_decimal(amount)
        async with self.locks.acquire(deal_lock_key(deal_id)):
            deal = await self._load(deal_id)

            if deal.status_enum == DealStatus.LOCKED and deal.deposit_tx_hash == tx_hash:
                logger.debug(f"🔁 DEPOSIT_REPLAY: {deal_id} {tx_hash} already applied")
                return deal
            DealStateValidator.require(DealEvent.DEPOSIT_DETECTED, deal.status)
            if confirmations < 1:
                raise InvariantViolation(f"Deposit {tx_hash} has no confirmations yet")

            if amount < deal.amount:
                await self.audit.record_detached(
                    AuditEventType.DEPOSIT_INSUFFICIENT,
                    deal_id=deal_id,
                    user_id=deal.buyer_id,
                    description=f"Received {amount}, expected {deal.amount}",
                    extra_data={"tx_hash": tx_hash, "received": str(amount), "expected": str(deal.amount)},
                )
                self._notify(
                    (deal.buyer_id,), NotificationKind.DEPOSIT_INSUFFICIENT, deal,
                    received=str(amount), expected=str(deal.amount),
                )
                raise DepositInsufficient(deal.amount, amount)

            overpayment = amount - deal.amount
            costs = OperationalCosts.for_activation(deal.activation_cost_trx)
            already_notified = deal.deposit_notification_sent

            async with managed_session(self.session_factory) as session:
                await self._cas(
                    session, deal, DealStatus.LOCKED,
                    deposit_tx_hash=tx_hash,
                    deposit_amount=amount,
                    overpayment=overpayment,
                    operational_costs=costs.to_dict(),
                    deposit_notification_sent=True,
                )
                await self.audit.record(
                    session,
                    AuditEventType.DEPOSIT_DETECTED,
                    deal_id=deal_id,
                    user_id=deal.buyer_id,
                    description=f"Deposit {amount} via {tx_hash}",
                    extra_data={
                        "tx_hash": tx_hash,
                        "amount": str(amount),
                        "overpayment": str(overpayment),
                        "from_address": from_address,
                        "confirmations": confirmations,
                    },
                )

            deal = await self._load(deal_id)
            if overpayment > ZERO:
                logger.warning(f"💸 DEPOSIT_OVERPAID: {deal_id} by {overpayment}")
            logger.info(f"🔒 DEAL_LOCKED: {deal_id} deposit {amount} tx={tx_hash}")

            await self._stop_watching(deal)
            if not already_notified:
                self._notify(deal.participant_ids(), NotificationKind.DEPOSIT_RECEIVED, deal, deposit_amount=str(amount))
            return deal

    # ──────────────────────────────────────────────
    # Expiry and cancellation
    # ──────────────────────────────────────────────

    @audit_fatal_errors
    async def deadline_expired(self, deal_id: str) -> Optional[Deal]:
        """Expire an unfunded deal or auto-release submitted work; a no-op when nothing is due"""
        async with self.locks.acquire(deal_lock_key(deal_id)):
            deal = await self._load(deal_id)
            now = self.clock.now()
            current = deal.status_enum

            if DealStateValidator.accepts(DealEvent.DEADLINE_EXPIRED, current):
                if now < deal.deadline:
                    return None
                async with managed_session(self.session_factory) as session:
                    await self._cas(session, deal, DealStatus.EXPIRED, completed_at=now)
                    await self._release_claims(session, deal)
                    await self.audit.record(
                        session,
                        AuditEventType.DEAL_EXPIRED,
                        deal_id=deal_id,
                        description=f"{current.value} -> expired (deadline {deal.deadline.isoformat()})",
                    )
                deal = await self._load(deal_id)
                logger.info(f"⌛ DEAL_EXPIRED: {deal_id} from {current.value}")
                await self._stop_watching(deal)
                self._notify(deal.participant_ids(), NotificationKind.EXPIRED, deal)
                await self._deal_terminated(deal, DealStatus.EXPIRED)
                return deal

            if DealStateValidator.accepts(DealEvent.AUTO_RELEASE, current):
                if now < deal.deadline + timedelta(hours=Config.AUTO_RELEASE_WINDOW_HOURS):
                    return None
                logger.info(f"⏰ AUTO_RELEASE: {deal_id} acceptance window elapsed")
                return await self._settle(
                    deal, PayoutAction.RELEASE, CompletionType.AUTO_RELEASE, raise_on_unavailable=False
                )

            return None

    @audit_fatal_errors
    async def cancel(self, deal_id: str, by_user: int) -> Deal:
        async with self.locks.acquire(deal_lock_key(deal_id)):
            deal = await self._load(deal_id)
            current = deal.status_enum
            DealStateValidator.require(DealEvent.CANCEL, current)
            if by_user not in deal.participant_ids() and not Config.is_admin(by_user):
                raise NotAuthorized(f"User {by_user} may not cancel {deal_id}")

            now = self.clock.now()
            async with managed_session(self.session_factory) as session:
                await self._cas(session, deal, DealStatus.CANCELLED, completed_at=now)
                await self._release_claims(session, deal)
                await self.audit.record(
                    session,
                    AuditEventType.DEAL_CANCELLED,
                    deal_id=deal_id,
                    user_id=by_user if by_user in deal.participant_ids() else None,
                    admin_id=None if by_user in deal.participant_ids() else by_user,
                    description=f"{current.value} -> cancelled by {by_user}",
                )

            deal = await self._load(deal_id)
            logger.info(f"❌ DEAL_CANCELLED: {deal_id} by {by_user}")
            await self._stop_watching(deal)
            self._notify(deal.participant_ids(), NotificationKind.CANCELLED, deal)
            await self._deal_terminated(deal, DealStatus.CANCELLED)
            return deal

    # ──────────────────────────────────────────────
    # Work, confirmation and disputes
    # ──────────────────────────────────────────────

    @audit_fatal_errors
    async def submit_work(self, deal_id: str, seller_id: int, description: str) -> Deal:
        async with self.locks.acquire(deal_lock_key(deal_id)):
            deal = await self._load(deal_id)
            DealStateValidator.require(DealEvent.SUBMIT_WORK, deal.status)
            self._require_party(deal, seller_id, DealRole.SELLER)
            description = (description or "").strip()
            if not description:
                raise InvariantViolation("Work description is required")

            now = self.clock.now()
            async with managed_session(self.session_factory) as session:
                await self._cas(
                    session, deal, DealStatus.WORK_SUBMITTED,
                    work_submission={"description": description, "submitted_at": now.isoformat()},
                )
                await self.audit.record(
                    session,
                    AuditEventType.WORK_SUBMITTED,
                    deal_id=deal_id,
                    user_id=seller_id,
                    description=description[:500],
                )

            deal = await self._load(deal_id)
            logger.info(f"📦 WORK_SUBMITTED: {deal_id}")
            self._notify((deal.buyer_id,), NotificationKind.WORK_SUBMITTED, deal)
            return deal

    @audit_fatal_errors
    async def open_dispute(
        self, deal_id: str, opener_id: int, reason: str, media: Optional[Sequence[str]] = None
    ) -> Dispute:
        async with self.locks.acquire(deal_lock_key(deal_id)):
            deal = await self._load(deal_id)
            if deal.status_enum == DealStatus.DISPUTE:
                raise DisputeAlreadyExists(f"Deal {deal_id} is already in dispute")
            DealStateValidator.require(DealEvent.OPEN_DISPUTE, deal.status)
            self._require_party(deal, opener_id)
            reason = (reason or "").strip()
            if not reason:
                raise InvariantViolation("Dispute reason is required")

            now = self.clock.now()
            # A queued release is superseded by the dispute outcome
            values: Dict[str, Any] = {"updated_at": now}
            if deal.payout_pending:
                values.update(
                    payout_pending=False, payout_attempts=0, next_payout_attempt_at=None, pending_payout=None,
                )
            async with managed_session(self.session_factory) as session:
                if not await self.deals.compare_and_set(session, deal_id, deal.status, DealStatus.DISPUTE, **values):
                    latest = await self.deals.get(session, deal_id)
                    if latest is not None and latest.status == DealStatus.DISPUTE.value:
                        raise DisputeAlreadyExists(f"Deal {deal_id} is already in dispute")
                    raise StaleState(f"Deal {deal_id} moved away from {deal.status}")
                dispute = await self.disputes.create(session, deal_id, opener_id, reason, media, now)
                await self.audit.record(
                    session,
                    AuditEventType.DISPUTE_OPENED,
                    deal_id=deal_id,
                    dispute_id=dispute.id,
                    user_id=opener_id,
                    description=reason[:500],
                    extra_data={
                        "from_status": deal.status,
                        "media": list(media or []),
                        "payout_retry_cancelled": bool(deal.payout_pending),
                    },
                )

            logger.info(f"⚖️ DISPUTE_OPENED: #{dispute.id} on {deal_id} by {opener_id}")
            self._notify(deal.participant_ids(), NotificationKind.DISPUTE_OPENED, deal, reason=reason)
            return dispute

    @audit_fatal_errors
    async def confirm(self, deal_id: str, buyer_id: int) -> Deal:
        async with self.locks.acquire(deal_lock_key(deal_id)):
            deal = await self._load(deal_id)
            DealStateValidator.require(DealEvent.CONFIRM, deal.status)
            self._require_party(deal, buyer_id, DealRole.BUYER)
            return await self._settle(deal, PayoutAction.RELEASE, CompletionType.CONFIRMED, actor_id=buyer_id)

    @audit_fatal_errors
    async def resolve(
        self,
        deal_id: str,
        arbiter_id: int,
        decision: Union[DisputeDecision, str],
        reason: Optional[str] = None,
    ) -> Deal:
        self._require_admin(arbiter_id)
        decision = _coerce_enum(DisputeDecision, decision, "dispute decision")
        async with self.locks.acquire(deal_lock_key(deal_id)):
            deal = await self._load(deal_id)
            DealStateValidator.require(DealEvent.RESOLVE, deal.status)
            if decision == DisputeDecision.REFUND_BUYER:
                action, completion = PayoutAction.REFUND, CompletionType.DISPUTE_REFUND
            else:
                action, completion = PayoutAction.RELEASE, CompletionType.DISPUTE_RELEASE
            return await self._settle(
                deal, action, completion, actor_id=arbiter_id, decision=decision, reason=reason
            )

    @audit_fatal_errors
    async def cancel_dispute(self, deal_id: str, admin_id: int, new_deadline_hours: int) -> Deal:
        self._require_admin(admin_id)
        if not 1 <= new_deadline_hours <= Config.MAX_DEADLINE_HOURS:
            raise InvariantViolation(f"New deadline must be 1-{Config.MAX_DEADLINE_HOURS} hours")
        async with self.locks.acquire(deal_lock_key(deal_id)):
            deal = await self._load(deal_id)
            DealStateValidator.require(DealEvent.CANCEL_DISPUTE, deal.status)

            now = self.clock.now()
            deadline = now + timedelta(hours=new_deadline_hours)
            async with managed_session(self.session_factory) as session:
                await self._cas(
                    session, deal, DealStatus.LOCKED,
                    deadline=deadline,
                    deadline_notification_sent=False,
                    payout_pending=False,
                    payout_attempts=0,
                    next_payout_attempt_at=None,
                    pending_payout=None,
                )
                dispute = await self.disputes.get_by_deal(session, deal_id)
                if dispute is not None:
                    await self.disputes.cancel(session, dispute.id, admin_id, now)
                await self.audit.record(
                    session,
                    AuditEventType.DISPUTE_CANCELLED,
                    deal_id=deal_id,
                    dispute_id=dispute.id if dispute else None,
                    admin_id=admin_id,
                    description=f"Dispute cancelled, new deadline {deadline.isoformat()}",
                    extra_data={"new_deadline_hours": new_deadline_hours},
                )

            deal = await self._load(deal_id)
            logger.info(f"↩️ DISPUTE_CANCELLED: {deal_id} by admin {admin_id}, deadline {deadline}")
            self._notify(
                deal.participant_ids(), NotificationKind.DISPUTE_CANCELLED, deal,
                deadline=deadline.strftime("%Y-%m-%d %H:%M UTC"),
            )
            return deal

    @audit_fatal_errors
    async def admin_force_transition(
        self, deal_id: str, admin_id: int, target: Union[DealStatus, str], reason: str
    ) -> Deal:
        if not Config.is_superadmin(admin_id):
            raise NotAuthorized(f"User {admin_id} is not a superadmin")
        target = _coerce_enum(DealStatus, target, "deal status")
        reason = (reason or "").strip()
        if not reason:
            raise InvariantViolation("A reason is required to force a status")

        async with self.locks.acquire(deal_lock_key(deal_id)):
            deal = await self._load(deal_id)
            current = deal.status_enum
            DealStateValidator.validate(DealEvent.ADMIN_FORCE, current, target)

            if target in FORCE_TARGETS_REQUIRING_DEPOSIT and not deal.deposit_tx_hash:
                raise Conflict(current.value, target.value, f"Deal {deal_id} was never funded")
            if target in PRE_MULTISIG_STATUSES and deal.multisig_address:
                raise Conflict(current.value, target.value, f"Deal {deal_id} already has a multisig address")
            if target not in PRE_MULTISIG_STATUSES | TERMINAL_STATUSES and not deal.multisig_address:
                raise Conflict(current.value, target.value, f"Deal {deal_id} has no multisig address yet")

            now = self.clock.now()
            terminal = target in TERMINAL_STATUSES
            values: Dict[str, Any] = {
                "payout_pending": False,
                "payout_attempts": 0,
                "next_payout_attempt_at": None,
                "pending_payout": None,
            }
            if terminal:
                values["completed_at"] = now

            async with managed_session(self.session_factory) as session:
                await self._cas(session, deal, target, **values)
                dispute_id = None
                if current == DealStatus.DISPUTE:
                    dispute = await self.disputes.get_by_deal(session, deal_id)
                    if dispute is not None:
                        dispute_id = dispute.id
                        await self.disputes.cancel(session, dispute.id, admin_id, now)
                if terminal:
                    await self._release_claims(session, deal)
                await self.audit.record(
                    session,
                    AuditEventType.ADMIN_FORCE_STATUS,
                    deal_id=deal_id,
                    dispute_id=dispute_id,
                    admin_id=admin_id,
                    description=reason,
                    extra_data={
                        "from_status": current.value,
                        "to_status": target.value,
                        "payout_retry_cancelled": bool(deal.payout_pending),
                    },
                )

            deal = await self._load(deal_id)
            logger.warning(f"🛠️ ADMIN_FORCE_STATUS: {deal_id} {current.value} -> {target.value} by {admin_id}: {reason}")
            if terminal:
                if current == DealStatus.WAITING_FOR_DEPOSIT:
                    await self._stop_watching(deal)
                kind = _FORCE_NOTIFICATIONS.get(target)
                if kind is not None:
                    self._notify(deal.participant_ids(), kind, deal)
                await self._deal_terminated(deal, target)
            return deal

    # ──────────────────────────────────────────────
    # Settlement and payout retries
    # ──────────────────────────────────────────────

    async def _submit_payout(self, deal: Deal, action: PayoutAction) -> PayoutResult:
        if action == PayoutAction.RELEASE:
            to_address = deal.seller_address
            amount = settle_release(deal.amount, deal.commission).released_amount
            submit = self.blockchain.release
        else:
            to_address = deal.buyer_address
            amount = settle_refund(deal.amount).refunded_amount
            submit = self.blockchain.refund
        if not deal.multisig_address or not to_address:
            raise InvariantViolation(f"Deal {deal.deal_id} lacks the addresses needed to {action.value}")
        logger.info(f"📤 PAYOUT_SUBMIT: {deal.deal_id} {action.value} {amount} -> {to_address}")
        return await call_with_timeout(submit(deal.multisig_address, to_address, amount), action.value)

    async def _schedule_payout_retry(
        self, deal: Deal, pending: Dict[str, Any], error: BlockchainUnavailable
    ) -> None:
        """Keep the status, mark the payout pending and set the next attempt time"""
        now = self.clock.now()
        attempts = (deal.payout_attempts or 0) + 1
        exhausted = attempts >= Config.PAYOUT_MAX_ATTEMPTS
        next_at = None if exhausted else now + timedelta(seconds=compute_backoff_delay(attempts))

        async with managed_session(self.session_factory) as session:
            await self._cas(
                session, deal,
                payout_pending=True,
                payout_attempts=attempts,
                next_payout_attempt_at=next_at,
                pending_payout=pending,
            )
            await self.audit.record(
                session,
                AuditEventType.PAYOUT_FAILED if exhausted else AuditEventType.PAYOUT_SCHEDULED,
                deal_id=deal.deal_id,
                description=error.message,
                extra_data={
                    "attempt": attempts,
                    "next_attempt_at": next_at.isoformat() if next_at else None,
                    **pending,
                },
            )

        if exhausted:
            logger.error(
                f"🚨 PAYOUT_RETRIES_EXHAUSTED: {deal.deal_id} after {attempts} attempts, left for admin review"
            )
        else:
            logger.warning(f"🔄 PAYOUT_RETRY_SCHEDULED: {deal.deal_id} attempt #{attempts} at {next_at}")

    async def _settle(
        self,
        deal: Deal,
        action: PayoutAction,
        completion: CompletionType,
        actor_id: Optional[int] = None,
        decision: Optional[DisputeDecision] = None,
        reason: Optional[str] = None,
        raise_on_unavailable: bool = True,
    ) -> Deal:
        """Move funds out of the multisig and close the deal. Caller holds the deal lock."""
        target = _SETTLEMENT_TARGETS[completion]
        DealStateValidator.validate(_SETTLEMENT_EVENTS[completion], deal.status, target)
        pending = {
            "action": action.value,
            "completion_type": completion.value,
            "decision": decision.value if decision else None,
            "actor_id": actor_id,
            "reason": reason,
        }

        try:
            result = await self._submit_payout(deal, action)
        except BlockchainUnavailable as e:
            await self._schedule_payout_retry(deal, pending, e)
            if raise_on_unavailable:
                raise
            return await self._load(deal.deal_id)

        price = await self.prices.get_trx_price()
        if deal.operational_costs:
            costs = OperationalCosts.from_dict(deal.operational_costs)
        else:
            costs = OperationalCosts.for_activation(deal.activation_cost_trx)
        costs.apply_payout(result.energy_method, result.fee_trx, result.trx_returned)
        costs.finalize(price, completion.value)

        if action == PayoutAction.RELEASE:
            settlement = settle_release(deal.amount, deal.commission)
        else:
            settlement = settle_refund(deal.amount)

        now = self.clock.now()
        values: Dict[str, Any] = {
            "completed_at": now,
            "payout_tx_hash": result.tx_hash,
            "released_amount": settlement.released_amount,
            "refunded_amount": settlement.refunded_amount,
            "commission_collected": settlement.commission_collected,
            "operational_costs": costs.to_dict(),
            "payout_pending": not result.confirmed,
            "payout_attempts": 0,
            "next_payout_attempt_at": None,
            "pending_payout": None,
        }
        if not result.confirmed:
            values["pending_payout"] = {**pending, "awaiting_confirmation": True, "tx_hash": result.tx_hash}
            values["next_payout_attempt_at"] = now + timedelta(seconds=compute_backoff_delay(1))

        banned: List[int] = []
        try:
            async with managed_session(self.session_factory) as session:
                await self._cas(session, deal, target, **values)
                dispute_id = None
                if decision is not None:
                    dispute_id, banned = await self._apply_dispute_outcome(session, deal, decision, actor_id, reason, now)
                await self._release_claims(session, deal)
                await self.audit.record(
                    session,
                    AuditEventType.DISPUTE_RESOLVED if decision else AuditEventType.DEAL_COMPLETED,
                    deal_id=deal.deal_id,
                    dispute_id=dispute_id,
                    user_id=actor_id if decision is None else None,
                    admin_id=actor_id if decision is not None else None,
                    description=reason or f"{completion.value} via {action.value}",
                    extra_data={
                        "tx_hash": result.tx_hash,
                        "confirmed": result.confirmed,
                        "released_amount": str(settlement.released_amount),
                        "refunded_amount": str(settlement.refunded_amount),
                        "commission_collected": str(settlement.commission_collected),
                        "total_trx_spent": str(costs.total_trx_spent),
                        "trx_price_at_completion": str(price),
                    },
                )
        except StaleState:
            # Funds already moved on chain; the row changed underneath us
            logger.error(f"🚨 PAYOUT_ORPHANED: {deal.deal_id} tx={result.tx_hash} but status moved from {deal.status}")
            await self.audit.record_detached(
                AuditEventType.OPERATION_FAILED,
                deal_id=deal.deal_id,
                description=f"Payout {result.tx_hash} submitted but the deal left {deal.status}",
                extra_data={"operation": "settle", "error_kind": "StaleState", "tx_hash": result.tx_hash},
            )
            raise

        deal = await self._load(deal.deal_id)
        logger.info(
            f"✅ DEAL_SETTLED: {deal.deal_id} -> {target.value} ({completion.value}) "
            f"released={settlement.released_amount} refunded={settlement.refunded_amount} "
            f"commission={settlement.commission_collected} tx={result.tx_hash} confirmed={result.confirmed}"
        )

        if decision is not None:
            self._notify(deal.participant_ids(), NotificationKind.DISPUTE_RESOLVED, deal, decision=decision.value)
        else:
            self._notify(
                deal.participant_ids(), NotificationKind.COMPLETED, deal,
                released_amount=str(settlement.released_amount),
            )
        for user_id in banned:
            self.notifier.send(user_id, NotificationKind.USER_BANNED, {"reason": "dispute_streak"})
        await self._deal_terminated(deal, target)
        return deal

    async def _apply_dispute_outcome(
        self,
        session: AsyncSession,
        deal: Deal,
        decision: DisputeDecision,
        arbiter_id: Optional[int],
        reason: Optional[str],
        now,
    ):
        """Resolve the dispute row, update both parties' stats, apply the loss-streak ban"""
        dispute = await self.disputes.get_by_deal(session, deal.deal_id)
        dispute_id = None
        if dispute is not None:
            dispute_id = dispute.id
            await self.disputes.resolve(session, dispute.id, decision, arbiter_id, now, reason)

        if decision == DisputeDecision.REFUND_BUYER:
            winner_id, loser_id = deal.buyer_id, deal.seller_id
        else:
            winner_id, loser_id = deal.seller_id, deal.buyer_id

        await self.users.record_dispute_outcome(session, winner_id, won=True)
        loser = await self.users.record_dispute_outcome(session, loser_id, won=False)

        banned = []
        if loser is not None and not loser.blacklisted and loser.loss_streak >= Config.AUTO_BAN_LOSS_STREAK:
            if await self.users.set_blacklist(session, loser_id, True, "dispute_streak", now):
                banned.append(loser_id)
                await self.audit.record(
                    session,
                    AuditEventType.USER_BANNED,
                    entity_type="user",
                    entity_id=loser_id,
                    deal_id=deal.deal_id,
                    user_id=loser_id,
                    admin_id=arbiter_id,
                    description=f"Auto-ban after {loser.loss_streak} consecutive dispute losses",
                    extra_data={"reason": "dispute_streak", "loss_streak": loser.loss_streak},
                )
                logger.warning(f"🚫 AUTO_BAN: user {loser_id} after {loser.loss_streak} dispute losses")
        return dispute_id, banned

    @audit_fatal_errors
    async def retry_payout(self, deal_id: str) -> Optional[Deal]:
        """Re-drive a pending payout: resubmit it, or poll a submitted transaction until confirmed"""
        async with self.locks.acquire(deal_lock_key(deal_id)):
            deal = await self._load(deal_id)
            if not deal.payout_pending:
                return None
            pending = dict(deal.pending_payout or {})
            action = PayoutAction(pending.get("action", PayoutAction.RELEASE.value))

            if pending.get("awaiting_confirmation"):
                return await self._poll_payout(deal, pending, action)

            completion = CompletionType(pending.get("completion_type", CompletionType.CONFIRMED.value))
            decision = DisputeDecision(pending["decision"]) if pending.get("decision") else None
            if not DealStateValidator.accepts(_SETTLEMENT_EVENTS[completion], deal.status):
                logger.warning(f"⚠️ PAYOUT_RETRY_SKIPPED: {deal_id} is {deal.status}, no longer settleable")
                async with managed_session(self.session_factory) as session:
                    await self._cas(
                        session, deal,
                        payout_pending=False,
                        payout_attempts=0,
                        next_payout_attempt_at=None,
                        pending_payout=None,
                    )
                return None

            logger.info(f"🔄 PAYOUT_RETRY: {deal_id} {action.value} attempt #{(deal.payout_attempts or 0) + 1}")
            return await self._settle(
                deal, action, completion,
                actor_id=pending.get("actor_id"),
                decision=decision,
                reason=pending.get("reason"),
                raise_on_unavailable=False,
            )

    async def _poll_payout(self, deal: Deal, pending: Dict[str, Any], action: PayoutAction) -> Deal:
        tx_hash = pending.get("tx_hash") or deal.payout_tx_hash
        try:
            state = await call_with_timeout(self.blockchain.get_transaction_status(tx_hash), "get_transaction_status")
        except BlockchainUnavailable as e:
            await self._schedule_payout_retry(deal, pending, e)
            return await self._load(deal.deal_id)

        if state == TransactionState.CONFIRMED:
            async with managed_session(self.session_factory) as session:
                await self._cas(
                    session, deal,
                    payout_pending=False,
                    payout_attempts=0,
                    next_payout_attempt_at=None,
                    pending_payout=None,
                )
                await self.audit.record(
                    session,
                    AuditEventType.PAYOUT_CONFIRMED,
                    deal_id=deal.deal_id,
                    description=f"{action.value} {tx_hash} confirmed",
                    extra_data={"tx_hash": tx_hash},
                )
            logger.info(f"✅ PAYOUT_CONFIRMED: {deal.deal_id} tx={tx_hash}")
            return await self._load(deal.deal_id)

        if state == TransactionState.PENDING:
            await self._schedule_payout_retry(deal, pending, BlockchainUnavailable(f"{tx_hash} still pending"))
            return await self._load(deal.deal_id)

        # Dropped on chain: the deal already holds its terminal status, only the transaction is redone
        logger.warning(f"⚠️ PAYOUT_TX_FAILED: {deal.deal_id} tx={tx_hash}, resubmitting {action.value}")
        try:
            result = await self._submit_payout(deal, action)
        except BlockchainUnavailable as e:
            await self._schedule_payout_retry(deal, pending, e)
            return await self._load(deal.deal_id)

        now = self.clock.now()
        new_pending = None
        next_at = None
        if not result.confirmed:
            new_pending = {**pending, "tx_hash": result.tx_hash}
            next_at = now + timedelta(seconds=compute_backoff_delay(1))
        async with managed_session(self.session_factory) as session:
            await self._cas(
                session, deal,
                payout_tx_hash=result.tx_hash,
                payout_pending=not result.confirmed,
                payout_attempts=0,
                next_payout_attempt_at=next_at,
                pending_payout=new_pending,
            )
            await self.audit.record(
                session,
                AuditEventType.PAYOUT_CONFIRMED if result.confirmed else AuditEventType.PAYOUT_SCHEDULED,
                deal_id=deal.deal_id,
                description=f"{action.value} resubmitted as {result.tx_hash}",
                extra_data={"failed_tx_hash": tx_hash, "tx_hash": result.tx_hash},
            )
        return await self._load(deal.deal_id)
