"""
Admin Service - commands issued from the admin console

Every command checks the caller's role and leaves an audit entry. Deal and
dispute commands delegate to the lifecycle engine; user bans are handled here.
"""

import logging
from typing import Any, Dict, List, NamedTuple, Optional, Union

from config import Config
from database import managed_session
from models import AuditEventType, DealRole, DealStatus, DisputeDecision, User
from services.audit_logger import AuditLogger
from services.deal_repository import DealRepository
from services.dispute_engine import DisputeEngine
from services.notification_service import NotificationKind, NotificationService
from services.user_repository import UserRepository
from utils.clock import Clock
from utils.exception_handler import DealNotFound, InvariantViolation, NotAuthorized, audit_fatal_errors

logger = logging.getLogger(__name__)

# Arbitration picks a winner; the deal engine speaks in decisions
WINNER_DECISIONS = {
    DealRole.BUYER: DisputeDecision.REFUND_BUYER,
    DealRole.SELLER: DisputeDecision.RELEASE_SELLER,
}


class BanResult(NamedTuple):
    """Result of a ban or unban command"""

    success: bool
    telegram_id: int
    already: bool = False
    error_message: Optional[str] = None


class AdminService:
    """Admin console commands over the deal lifecycle core"""

    def __init__(
        self,
        engine,
        disputes: DisputeEngine,
        session_factory,
        clock: Clock,
        audit: AuditLogger,
        notifier: NotificationService,
        users: Optional[UserRepository] = None,
        deals: Optional[DealRepository] = None,
    ):
        self.engine = engine
        self.disputes = disputes
        self.session_factory = session_factory
        self.clock = clock
        self.audit = audit
        self.notifier = notifier
        self.users = users or UserRepository()
        self.deals = deals or DealRepository()

    @staticmethod
    def _require_admin(admin_id: int) -> None:
        if not Config.is_admin(admin_id):
            raise NotAuthorized(f"User {admin_id} is not an admin")

    async def resolve_dispute(
        self, admin_id: int, dispute_id: int, winner: Union[DealRole, str], reason: str
    ):
        self._require_admin(admin_id)
        try:
            winner = winner if isinstance(winner, DealRole) else DealRole(winner)
        except ValueError:
            raise InvariantViolation(f"Winner must be buyer or seller, got {winner}")
        logger.info(f"⚖️ ADMIN_RESOLVE: dispute #{dispute_id} for {winner.value} by {admin_id}")
        return await self.disputes.resolve(dispute_id, admin_id, WINNER_DECISIONS[winner], reason)

    async def cancel_dispute(self, admin_id: int, dispute_id: int, new_deadline_hours: int):
        self._require_admin(admin_id)
        return await self.disputes.cancel(dispute_id, admin_id, new_deadline_hours)

    async def force_status(self, admin_id: int, deal_id: str, target: Union[DealStatus, str], reason: str):
        return await self.engine.admin_force_transition(deal_id, admin_id, target, reason)

    @audit_fatal_errors
    async def toggle_deal_hidden(self, deal_id: str, admin_id: int) -> bool:
        """Soft-hide a deal from user listings; returns the new flag"""
        self._require_admin(admin_id)
        async with managed_session(self.session_factory) as session:
            deal = await self.deals.get(session, deal_id)
            if deal is None:
                raise DealNotFound(deal_id)
            deal.hidden = not deal.hidden
            deal.updated_at = self.clock.now()
            await self.audit.record(
                session,
                AuditEventType.DEAL_HIDDEN_TOGGLED,
                deal_id=deal_id,
                admin_id=admin_id,
                description=f"hidden={deal.hidden}",
            )
            hidden = deal.hidden
        logger.info(f"🙈 DEAL_HIDDEN_TOGGLED: {deal_id} hidden={hidden} by {admin_id}")
        return hidden

    async def ban_user(self, admin_id: int, telegram_id: int, reason: str, note: Optional[str] = None) -> BanResult:
        self._require_admin(admin_id)
        reason = (reason or "").strip() or "admin"
        async with managed_session(self.session_factory) as session:
            user = await self.users.get(session, telegram_id)
            if user is None:
                return BanResult(False, telegram_id, error_message="User not found")
            if not await self.users.set_blacklist(session, telegram_id, True, reason, self.clock.now(), note):
                return BanResult(False, telegram_id, already=True, error_message="already_banned")
            await self.audit.record(
                session,
                AuditEventType.USER_BANNED,
                entity_type="user",
                entity_id=telegram_id,
                user_id=telegram_id,
                admin_id=admin_id,
                description=reason,
                extra_data={"note": note},
            )

        logger.warning(f"🚫 USER_BANNED: {telegram_id} by {admin_id}: {reason}")
        self.notifier.send(telegram_id, NotificationKind.USER_BANNED, {"reason": reason})
        return BanResult(True, telegram_id)

    async def unban_user(self, admin_id: int, telegram_id: int) -> BanResult:
        self._require_admin(admin_id)
        async with managed_session(self.session_factory) as session:
            user = await self.users.get(session, telegram_id)
            if user is None:
                return BanResult(False, telegram_id, error_message="User not found")
            if not await self.users.set_blacklist(session, telegram_id, False, None, self.clock.now()):
                return BanResult(False, telegram_id, already=True, error_message="already_unbanned")
            await self.audit.record(
                session,
                AuditEventType.USER_UNBANNED,
                entity_type="user",
                entity_id=telegram_id,
                user_id=telegram_id,
                admin_id=admin_id,
            )

        logger.info(f"✅ USER_UNBANNED: {telegram_id} by {admin_id}")
        return BanResult(True, telegram_id)

    @staticmethod
    def _ban_info(user: User) -> Dict[str, Any]:
        return {
            "telegram_id": user.telegram_id,
            "username": user.username,
            "blacklisted": user.blacklisted,
            "blacklist_reason": user.blacklist_reason,
            "blacklisted_at": user.blacklisted_at,
            "ban_note": user.ban_note,
            "disputes_won": user.disputes_won,
            "disputes_lost": user.disputes_lost,
            "loss_streak": user.loss_streak,
            "at_risk": not user.blacklisted and user.loss_streak >= Config.AUTO_BAN_LOSS_STREAK - 1,
        }

    async def get_ban_info(self, telegram_id: int) -> Optional[Dict[str, Any]]:
        async with managed_session(self.session_factory) as session:
            user = await self.users.get(session, telegram_id)
        return self._ban_info(user) if user is not None else None

    async def list_users_at_risk(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with managed_session(self.session_factory) as session:
            users = await self.users.list_at_risk(session, Config.AUTO_BAN_LOSS_STREAK - 1, limit)
        return [self._ban_info(u) for u in users]

    async def list_banned_users(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with managed_session(self.session_factory) as session:
            users = await self.users.list_banned(session, limit)
        return [self._ban_info(u) for u in users]
