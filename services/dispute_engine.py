"""
Dispute Engine
Dispute states open -> in_review -> resolved, coupled to the deal state machine.
Opening, resolving and cancelling are delegated to DealLifecycleEngine so the
deal and dispute rows always change in the same transaction.
"""

import logging
from typing import List, Optional, Sequence, Union

from config import Config
from database import managed_session
from models import AuditEventType, Dispute, DisputeComment, DisputeDecision, DisputeStatus
from services.audit_logger import AuditLogger
from services.deal_repository import DealRepository
from services.dispute_repository import DisputeRepository
from utils.clock import Clock
from utils.exception_handler import Conflict, DisputeNotFound, InvariantViolation, NotAuthorized, audit_fatal_errors
from utils.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)


def dispute_lock_key(dispute_id: int) -> str:
    return f"dispute:{dispute_id}"


class DisputeEngine:
    def __init__(
        self,
        engine,
        session_factory,
        clock: Clock,
        locks: KeyedLock,
        audit: AuditLogger,
        disputes: Optional[DisputeRepository] = None,
        deals: Optional[DealRepository] = None,
    ):
        self.engine = engine
        self.session_factory = session_factory
        self.clock = clock
        self.locks = locks
        self.audit = audit
        self.disputes = disputes or DisputeRepository()
        self.deals = deals or DealRepository()

    async def get(self, dispute_id: int) -> Dispute:
        async with managed_session(self.session_factory) as session:
            dispute = await self.disputes.get(session, dispute_id)
        if dispute is None:
            raise DisputeNotFound(dispute_id)
        return dispute

    async def get_for_deal(self, deal_id: str) -> Optional[Dispute]:
        async with managed_session(self.session_factory) as session:
            return await self.disputes.get_by_deal(session, deal_id)

    async def list_comments(self, dispute_id: int) -> List[DisputeComment]:
        async with managed_session(self.session_factory) as session:
            return await self.disputes.list_comments(session, dispute_id)

    async def open_dispute(
        self, deal_id: str, opener_id: int, reason: str, media: Optional[Sequence[str]] = None
    ) -> Dispute:
        return await self.engine.open_dispute(deal_id, opener_id, reason, media)

    @audit_fatal_errors
    async def add_comment(self, dispute_id: int, author_id: int, text: str) -> DisputeComment:
        """Append to the thread; the first arbiter comment moves the dispute to in_review"""
        text = (text or "").strip()
        if not text:
            raise InvariantViolation("Comment text is required")

        async with self.locks.acquire(dispute_lock_key(dispute_id)):
            async with managed_session(self.session_factory) as session:
                dispute = await self.disputes.get(session, dispute_id)
                if dispute is None:
                    raise DisputeNotFound(dispute_id)
                if dispute.status == DisputeStatus.RESOLVED.value:
                    raise Conflict(dispute.status, "comment", f"Dispute {dispute_id} is closed")

                deal = await self.deals.get(session, dispute.deal_id)
                is_admin = Config.is_admin(author_id)
                if not is_admin and author_id not in deal.participant_ids():
                    raise NotAuthorized(f"User {author_id} is not part of dispute {dispute_id}")

                now = self.clock.now()
                comment = await self.disputes.add_comment(session, dispute_id, author_id, text, is_admin, now)
                moved_to_review = False
                if is_admin and dispute.status == DisputeStatus.OPEN.value:
                    moved_to_review = await self.disputes.mark_in_review(session, dispute_id, author_id, now)

                await self.audit.record(
                    session,
                    AuditEventType.DISPUTE_COMMENT,
                    entity_type="dispute",
                    entity_id=dispute_id,
                    deal_id=dispute.deal_id,
                    dispute_id=dispute_id,
                    user_id=None if is_admin else author_id,
                    admin_id=author_id if is_admin else None,
                    description=text[:500],
                    extra_data={"in_review": moved_to_review},
                )

        if moved_to_review:
            logger.info(f"🔍 DISPUTE_IN_REVIEW: #{dispute_id} picked up by arbiter {author_id}")
        return comment

    async def resolve(
        self,
        dispute_id: int,
        arbiter_id: int,
        decision: Union[DisputeDecision, str],
        reason: Optional[str] = None,
    ):
        if not Config.is_admin(arbiter_id):
            raise NotAuthorized(f"User {arbiter_id} is not an admin")
        dispute = await self.get(dispute_id)
        return await self.engine.resolve(dispute.deal_id, arbiter_id, decision, reason)

    async def cancel(self, dispute_id: int, admin_id: int, new_deadline_hours: int):
        if not Config.is_admin(admin_id):
            raise NotAuthorized(f"User {admin_id} is not an admin")
        dispute = await self.get(dispute_id)
        return await self.engine.cancel_dispute(dispute.deal_id, admin_id, new_deadline_hours)
