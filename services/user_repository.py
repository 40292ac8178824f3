"""
User persistence: dispute stats, blacklist, platform affiliation, saved wallets
and the active-deal sentinel that enforces one active deal per user.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from models import SavedWallet, User
from utils.exception_handler import InvariantViolation

logger = logging.getLogger(__name__)


class UserRepository:
    async def get(self, session: AsyncSession, telegram_id: int) -> Optional[User]:
        return await session.get(User, telegram_id)

    async def get_by_username(self, session: AsyncSession, username: str) -> Optional[User]:
        handle = username.lstrip("@").lower()
        result = await session.execute(select(User).where(func.lower(User.username) == handle))
        return result.scalars().first()

    async def register(
        self, session: AsyncSession, telegram_id: int, username: Optional[str], now: datetime
    ) -> User:
        """Create the user or refresh the handle and last activity"""
        user = await session.get(User, telegram_id)
        if user is None:
            user = User(
                telegram_id=telegram_id,
                username=username,
                created_at=now,
                last_activity=now,
                disputes_won=0,
                disputes_lost=0,
                loss_streak=0,
                blacklisted=False,
                bot_blocked=False,
            )
            session.add(user)
            await session.flush()
            logger.info(f"👤 USER_REGISTERED: {telegram_id} (@{username})")
        else:
            user.username = username
            user.last_activity = now
        return user

    # ──────────────────────────────────────────────
    # Active-deal sentinel
    # ──────────────────────────────────────────────

    async def claim_active_deal(self, session: AsyncSession, telegram_id: int, deal_id: str) -> bool:
        """UPDATE users SET active_deal_id = :deal WHERE telegram_id = :id AND active_deal_id IS NULL"""
        result = await session.execute(
            update(User)
            .where(User.telegram_id == telegram_id, User.active_deal_id.is_(None))
            .values(active_deal_id=deal_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_active_deal(self, session: AsyncSession, telegram_id: int, deal_id: str) -> bool:
        result = await session.execute(
            update(User)
            .where(User.telegram_id == telegram_id, User.active_deal_id == deal_id)
            .values(active_deal_id=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ──────────────────────────────────────────────
    # Blacklist and dispute stats
    # ──────────────────────────────────────────────

    async def set_blacklist(
        self,
        session: AsyncSession,
        telegram_id: int,
        blacklisted: bool,
        reason: Optional[str],
        now: datetime,
        note: Optional[str] = None,
    ) -> bool:
        """Flip the blacklist flag; returns False when it already had that value"""
        values = {
            "blacklisted": blacklisted,
            "blacklist_reason": reason if blacklisted else None,
            "blacklisted_at": now if blacklisted else None,
            "ban_note": note,
        }
        if not blacklisted:
            values["loss_streak"] = 0
        result = await session.execute(
            update(User)
            .where(User.telegram_id == telegram_id, User.blacklisted.is_(not blacklisted))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_dispute_outcome(self, session: AsyncSession, telegram_id: int, won: bool) -> Optional[User]:
        """A win resets the loss streak; a loss extends it. Returns the refreshed user."""
        if won:
            values = {"disputes_won": User.disputes_won + 1, "loss_streak": 0}
        else:
            values = {"disputes_lost": User.disputes_lost + 1, "loss_streak": User.loss_streak + 1}
        await session.execute(
            update(User)
            .where(User.telegram_id == telegram_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(
            select(User).where(User.telegram_id == telegram_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_banned(self, session: AsyncSession, limit: int = 100) -> List[User]:
        result = await session.execute(
            select(User).where(User.blacklisted.is_(True)).order_by(User.blacklisted_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def list_at_risk(self, session: AsyncSession, min_streak: int, limit: int = 100) -> List[User]:
        result = await session.execute(
            select(User)
            .where(User.blacklisted.is_(False), User.loss_streak >= min_streak)
            .order_by(User.loss_streak.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ──────────────────────────────────────────────
    # Platform affiliation
    # ──────────────────────────────────────────────

    async def link_platform(self, session: AsyncSession, telegram_id: int, platform_code: str) -> bool:
        """Set the platform code once; an existing affiliation is never overwritten"""
        result = await session.execute(
            update(User)
            .where(User.telegram_id == telegram_id, User.platform_code.is_(None))
            .values(platform_code=platform_code)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def count_for_platform(self, session: AsyncSession, platform_code: str) -> int:
        result = await session.execute(select(func.count()).select_from(User).where(User.platform_code == platform_code))
        return int(result.scalar_one())

    # ──────────────────────────────────────────────
    # Saved wallets
    # ──────────────────────────────────────────────

    async def list_wallets(self, session: AsyncSession, telegram_id: int) -> List[SavedWallet]:
        result = await session.execute(
            select(SavedWallet).where(SavedWallet.user_id == telegram_id).order_by(SavedWallet.id)
        )
        return list(result.scalars().all())

    async def add_wallet(
        self, session: AsyncSession, telegram_id: int, label: str, address: str, now: datetime
    ) -> SavedWallet:
        wallets = await self.list_wallets(session, telegram_id)
        if len(wallets) >= Config.MAX_SAVED_WALLETS:
            raise InvariantViolation(f"At most {Config.MAX_SAVED_WALLETS} saved wallets allowed")
        if any(w.address == address for w in wallets):
            raise InvariantViolation(f"Wallet {address} is already saved")
        wallet = SavedWallet(user_id=telegram_id, label=label.strip()[:50] or "Wallet", address=address, created_at=now)
        session.add(wallet)
        try:
            await session.flush()
        except IntegrityError:
            raise InvariantViolation(f"Wallet {address} is already saved")
        return wallet

    async def get_wallet(self, session: AsyncSession, telegram_id: int, wallet_id: int) -> Optional[SavedWallet]:
        wallet = await session.get(SavedWallet, wallet_id)
        if wallet is None or wallet.user_id != telegram_id:
            return None
        return wallet

    async def remove_wallet(self, session: AsyncSession, telegram_id: int, wallet_id: int) -> bool:
        wallet = await self.get_wallet(session, telegram_id, wallet_id)
        if wallet is None:
            return False
        await session.delete(wallet)
        return True

    # ──────────────────────────────────────────────
    # Telegram chrome
    # ──────────────────────────────────────────────

    async def mark_bot_blocked(self, session: AsyncSession, telegram_id: int, blocked: bool = True) -> None:
        await session.execute(
            update(User)
            .where(User.telegram_id == telegram_id)
            .values(bot_blocked=blocked)
            .execution_options(synchronize_session=False)
        )

    async def touch_activity(self, session: AsyncSession, telegram_id: int, now: datetime) -> None:
        await session.execute(
            update(User)
            .where(User.telegram_id == telegram_id)
            .values(last_activity=now)
            .execution_options(synchronize_session=False)
        )
