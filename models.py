"""
KeyShield Deal Lifecycle Core - Database Schema
===============================================

Schema for the deal lifecycle of the KeyShield Telegram escrow bot:
- Multisig TRON escrow deals between a buyer and a seller
- Users with dispute stats, blacklist and partner affiliation
- One dispute per deal with bounded comment threads
- Partner platforms with denormalized commission stats
- Atomic counters, audit trail and conversational sessions

Amounts are stored as integer micro-units (6 fractional digits) and surface
as Decimal. Datetimes are naive UTC.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

SCHEMA_VERSION = 1

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class Micros(TypeDecorator):
    """Fixed-point decimal with 6 fractional digits stored as BIGINT micro-units"""

    impl = BigInteger
    cache_ok = True

    QUANTUM = Decimal("0.000001")
    FACTOR = Decimal(1_000_000)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError("Float amounts are not allowed in persistence, use Decimal")
        micros = (Decimal(value) * self.FACTOR).to_integral_value(rounding=ROUND_HALF_UP)
        return int(micros)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return (Decimal(int(value)) / self.FACTOR).quantize(self.QUANTUM)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class DealStatus(Enum):
    """Deal lifecycle states"""
    CREATED = "created"
    WAITING_FOR_SELLER_WALLET = "waiting_for_seller_wallet"
    WAITING_FOR_BUYER_WALLET = "waiting_for_buyer_wallet"
    WAITING_FOR_DEPOSIT = "waiting_for_deposit"
    LOCKED = "locked"
    IN_PROGRESS = "in_progress"
    WORK_SUBMITTED = "work_submitted"
    COMPLETED = "completed"
    DISPUTE = "dispute"
    RESOLVED = "resolved"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class DealRole(Enum):
    BUYER = "buyer"
    SELLER = "seller"


class CommissionPayer(Enum):
    """Who bears the platform commission"""
    BUYER = "buyer"
    SELLER = "seller"
    SPLIT = "split"


class DealAsset(Enum):
    USDT = "USDT"
    TRX = "TRX"


class EnergyMethod(Enum):
    """Energy provisioning used for an outgoing multisig transaction"""
    FEESAVER = "feesaver"
    TRX = "trx"
    NONE = "none"


class PayoutAction(Enum):
    RELEASE = "release"
    REFUND = "refund"


class CompletionType(Enum):
    """How a deal reached settlement"""
    CONFIRMED = "confirmed"
    AUTO_RELEASE = "auto_release"
    DISPUTE_RELEASE = "dispute_release"
    DISPUTE_REFUND = "dispute_refund"


class DisputeStatus(Enum):
    OPEN = "open"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"


class DisputeDecision(Enum):
    REFUND_BUYER = "refund_buyer"
    RELEASE_SELLER = "release_seller"


class SessionType(Enum):
    """Conversational input flows buffered between user messages"""
    CREATE_DEAL = "create_deal"
    DISPUTE = "dispute"
    NAVIGATION = "navigation"
    SCREEN_DATA = "screen_data"
    KEY_VALIDATION = "key_validation"


class AuditEventType(Enum):
    """Audit trail event types"""
    DEAL_CREATED = "deal_created"
    WALLET_PROVIDED = "wallet_provided"
    DEPOSIT_DETECTED = "deposit_detected"
    DEPOSIT_INSUFFICIENT = "deposit_insufficient"
    DEAL_EXPIRED = "deal_expired"
    DEAL_CANCELLED = "deal_cancelled"
    WORK_SUBMITTED = "work_submitted"
    DEAL_COMPLETED = "deal_completed"
    DEADLINE_WARNING = "deadline_warning"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_COMMENT = "dispute_comment"
    DISPUTE_RESOLVED = "dispute_resolved"
    DISPUTE_CANCELLED = "dispute_cancelled"
    ADMIN_FORCE_STATUS = "admin_force_status"
    DEAL_HIDDEN_TOGGLED = "deal_hidden_toggled"
    USER_BANNED = "user_banned"
    USER_UNBANNED = "user_unbanned"
    PAYOUT_SCHEDULED = "payout_scheduled"
    PAYOUT_CONFIRMED = "payout_confirmed"
    PAYOUT_FAILED = "payout_failed"
    PLATFORM_CREATED = "platform_created"
    OPERATION_FAILED = "operation_failed"


WAITING_STATUSES = frozenset({
    DealStatus.WAITING_FOR_SELLER_WALLET,
    DealStatus.WAITING_FOR_BUYER_WALLET,
    DealStatus.WAITING_FOR_DEPOSIT,
})

# Statuses that carry no multisig address yet
PRE_MULTISIG_STATUSES = frozenset({
    DealStatus.CREATED,
    DealStatus.WAITING_FOR_SELLER_WALLET,
    DealStatus.WAITING_FOR_BUYER_WALLET,
})

TERMINAL_STATUSES = frozenset({
    DealStatus.COMPLETED,
    DealStatus.RESOLVED,
    DealStatus.EXPIRED,
    DealStatus.CANCELLED,
    DealStatus.REFUNDED,
})


def _status_check(enum_cls, column: str) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# CORE USER MODELS
# ============================================================================

class User(Base):
    """Telegram user taking part in deals"""
    __tablename__ = 'users'

    telegram_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    username: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Dispute stats
    disputes_won: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    disputes_lost: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    loss_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Blacklist
    blacklisted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    blacklist_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    blacklisted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    ban_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Partner affiliation (immutable once set)
    platform_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)

    # Single-active-deal sentinel
    active_deal_id: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)

    # Telegram chrome state (opaque here)
    bot_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    main_message_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    last_activity: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    schema_version: Mapped[int] = mapped_column(Integer, default=SCHEMA_VERSION, nullable=False)

    __table_args__ = (
        CheckConstraint('loss_streak >= 0', name='ck_users_loss_streak_positive'),
        Index('ix_users_blacklisted', 'blacklisted'),
    )

    def __repr__(self):
        return f"<User(telegram_id={self.telegram_id}, username={self.username}, active_deal={self.active_deal_id})>"


class SavedWallet(Base):
    """Saved TRON payout addresses (ordered by insertion)"""
    __tablename__ = 'saved_wallets'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey('users.telegram_id'), nullable=False, index=True)
    label = Column(String(50), nullable=False)
    address = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'address', name='uq_saved_wallets_user_address'),
    )


# ============================================================================
# DEALS
# ============================================================================

class Deal(Base):
    """Multisig escrow deal (aggregate root)"""
    __tablename__ = 'deals'

    # Primary key
    id = Column(Integer, primary_key=True, autoincrement=True)
    deal_id = Column(String(20), unique=True, nullable=False, index=True)  # D-<n>

    # Participants
    buyer_id = Column(BigInteger, ForeignKey('users.telegram_id'), nullable=False, index=True)
    seller_id = Column(BigInteger, ForeignKey('users.telegram_id'), nullable=False, index=True)
    creator_role = Column(String(10), nullable=False)

    # Terms
    product_name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    asset = Column(String(10), default=DealAsset.USDT.value, nullable=False)
    amount = Column(Micros, nullable=False)

    # Commission and its attribution
    commission = Column(Micros, nullable=False)
    commission_type = Column(String(10), nullable=False)  # buyer|seller|split
    buyer_commission = Column(Micros, nullable=False)
    seller_commission = Column(Micros, nullable=False)

    platform_code = Column(String(32), nullable=True, index=True)

    # Addresses
    multisig_address = Column(String(64), nullable=True, unique=True)
    buyer_address = Column(String(64), nullable=True)
    seller_address = Column(String(64), nullable=True)
    activation_cost_trx = Column(Micros, nullable=True)

    # Deposit
    deposit_tx_hash = Column(String(100), nullable=True)
    deposit_amount = Column(Micros, nullable=True)
    overpayment = Column(Micros, nullable=True)
    deposit_notification_sent = Column(Boolean, default=False, nullable=False)

    # Settlement
    payout_tx_hash = Column(String(100), nullable=True)
    released_amount = Column(Micros, nullable=True)
    refunded_amount = Column(Micros, nullable=True)
    commission_collected = Column(Micros, nullable=True)
    operational_costs = Column(JsonType, nullable=True)

    # Payout retry queue
    payout_pending = Column(Boolean, default=False, nullable=False)
    payout_attempts = Column(Integer, default=0, nullable=False)
    next_payout_attempt_at = Column(DateTime(timezone=False), nullable=True)
    pending_payout = Column(JsonType, nullable=True)

    # Lifecycle
    status = Column(String(32), default=DealStatus.CREATED.value, nullable=False)
    deadline = Column(DateTime(timezone=False), nullable=False)
    deadline_notification_sent = Column(Boolean, default=False, nullable=False)
    work_submission = Column(JsonType, nullable=True)  # {description, submitted_at}
    hidden = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=False), nullable=False)
    updated_at = Column(DateTime(timezone=False), nullable=True)
    completed_at = Column(DateTime(timezone=False), nullable=True)

    schema_version = Column(Integer, default=SCHEMA_VERSION, nullable=False)

    __table_args__ = (
        CheckConstraint(_status_check(DealStatus, 'status'), name='ck_deals_status_valid'),
        CheckConstraint("creator_role IN ('buyer', 'seller')", name='ck_deals_creator_role_valid'),
        CheckConstraint("commission_type IN ('buyer', 'seller', 'split')", name='ck_deals_commission_type_valid'),
        CheckConstraint("asset IN ('USDT', 'TRX')", name='ck_deals_asset_valid'),
        CheckConstraint('buyer_id <> seller_id', name='ck_deals_distinct_parties'),
        CheckConstraint('commission <= amount', name='ck_deals_commission_bounded'),
        CheckConstraint('buyer_commission + seller_commission = commission', name='ck_deals_commission_split_sum'),
        Index('ix_deals_status_deadline', 'status', 'deadline'),
        Index('ix_deals_platform_status', 'platform_code', 'status'),
        Index('ix_deals_payout_pending', 'payout_pending', 'next_payout_attempt_at'),
    )

    @property
    def status_enum(self) -> DealStatus:
        return DealStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum in TERMINAL_STATUSES

    def participant_ids(self):
        return (self.buyer_id, self.seller_id)

    def __repr__(self):
        return f"<Deal(deal_id={self.deal_id}, status={self.status}, amount={self.amount})>"


# ============================================================================
# DISPUTES
# ============================================================================

class Dispute(Base):
    """Dispute over a deal (one per deal)"""
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deal_id = Column(String(20), ForeignKey("deals.deal_id"), nullable=False)
    opened_by = Column(BigInteger, ForeignKey("users.telegram_id"), nullable=False)
    reason = Column(Text, nullable=False)
    media = Column(JsonType, nullable=True)  # list of media references

    status = Column(String(20), default=DisputeStatus.OPEN.value, nullable=False)
    decision = Column(String(20), nullable=True)
    arbiter_id = Column(BigInteger, nullable=True)
    resolution_note = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=False), nullable=False)
    updated_at = Column(DateTime(timezone=False), nullable=True)
    resolved_at = Column(DateTime(timezone=False), nullable=True)
    cancelled_at = Column(DateTime(timezone=False), nullable=True)

    schema_version = Column(Integer, default=SCHEMA_VERSION, nullable=False)

    __table_args__ = (
        UniqueConstraint('deal_id', name='uq_disputes_deal'),
        CheckConstraint(_status_check(DisputeStatus, 'status'), name='ck_disputes_status_valid'),
        CheckConstraint(
            "decision IS NULL OR decision IN ('refund_buyer', 'release_seller')",
            name='ck_disputes_decision_valid',
        ),
        # Decision present iff resolved; admin-cancelled disputes resolve without one
        CheckConstraint(
            "(status = 'resolved' AND (decision IS NOT NULL OR cancelled_at IS NOT NULL)) "
            "OR (status <> 'resolved' AND decision IS NULL)",
            name='ck_disputes_decision_iff_resolved',
        ),
        Index('ix_disputes_status', 'status'),
    )

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    def __repr__(self):
        return f"<Dispute(id={self.id}, deal_id={self.deal_id}, status={self.status}, decision={self.decision})>"


class DisputeComment(Base):
    """Comments in a dispute thread"""
    __tablename__ = "dispute_comments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(Integer, ForeignKey("disputes.id"), nullable=False, index=True)
    author_id = Column(BigInteger, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=False), nullable=False)


# ============================================================================
# PARTNERS
# ============================================================================

class Platform(Base):
    """Partner platform with denormalized stats (written by the partner ledger)"""
    __tablename__ = "platforms"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(32), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    login = Column(String(64), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    commission_percent = Column(Micros, nullable=False, default=Decimal("10"))
    is_active = Column(Boolean, default=True, nullable=False)

    stats = Column(JsonType, nullable=True)
    stats_updated_at = Column(DateTime(timezone=False), nullable=True)

    created_at = Column(DateTime(timezone=False), nullable=False)
    schema_version = Column(Integer, default=SCHEMA_VERSION, nullable=False)


# ============================================================================
# SYSTEM TABLES
# ============================================================================

class Counter(Base):
    """Named monotonically increasing counters"""
    __tablename__ = "counters"

    name = Column(String(50), primary_key=True)
    value = Column(BigInteger, nullable=False, default=0)


class AuditLog(Base):
    """Append-only audit trail"""
    __tablename__ = 'audit_logs'

    # Primary key (insertion order is the audit order)
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Event details
    event_type = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)  # deal, dispute, user, platform
    entity_id = Column(String(50), nullable=False)

    # References
    deal_id = Column(String(20), nullable=True, index=True)
    dispute_id = Column(Integer, nullable=True)
    user_id = Column(BigInteger, nullable=True, index=True)
    admin_id = Column(BigInteger, nullable=True)

    # Context
    description = Column(Text, nullable=True)
    extra_data = Column(JsonType, nullable=True)

    created_at = Column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        Index('ix_audit_event_entity', 'event_type', 'entity_type'),
        Index('ix_audit_entity_id', 'entity_type', 'entity_id'),
        Index('ix_audit_created', 'created_at'),
    )


class UserSession(Base):
    """Conversational input buffer keyed by (user, session type)"""
    __tablename__ = 'user_sessions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    session_type = Column(String(50), nullable=False)
    data = Column(JsonType, nullable=True)

    created_at = Column(DateTime(timezone=False), nullable=False)
    updated_at = Column(DateTime(timezone=False), nullable=False)
    expires_at = Column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'session_type', name='uq_user_sessions_user_type'),
        CheckConstraint(_status_check(SessionType, 'session_type'), name='ck_user_sessions_type_valid'),
        Index('ix_user_sessions_expires', 'expires_at'),
    )
