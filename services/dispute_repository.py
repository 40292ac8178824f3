"""Dispute persistence: one dispute per deal, bounded comment threads"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from models import Dispute, DisputeComment, DisputeDecision, DisputeStatus
from utils.exception_handler import CommentLimit, DisputeAlreadyExists

logger = logging.getLogger(__name__)


class DisputeRepository:
    async def get(self, session: AsyncSession, dispute_id: int) -> Optional[Dispute]:
        return await session.get(Dispute, dispute_id)

    async def get_by_deal(self, session: AsyncSession, deal_id: str) -> Optional[Dispute]:
        result = await session.execute(select(Dispute).where(Dispute.deal_id == deal_id))
        return result.scalar_one_or_none()

    async def create(
        self,
        session: AsyncSession,
        deal_id: str,
        opened_by: int,
        reason: str,
        media: Optional[Sequence[str]],
        now: datetime,
    ) -> Dispute:
        """Open a dispute, reusing a previously cancelled one for the same deal"""
        existing = await self.get_by_deal(session, deal_id)
        if existing is not None:
            if not existing.is_cancelled:
                raise DisputeAlreadyExists(f"Deal {deal_id} already has dispute {existing.id}")
            result = await session.execute(
                update(Dispute)
                .where(Dispute.id == existing.id, Dispute.cancelled_at.is_not(None))
                .values(
                    opened_by=opened_by,
                    reason=reason,
                    media=list(media or []),
                    status=DisputeStatus.OPEN.value,
                    decision=None,
                    arbiter_id=None,
                    resolution_note=None,
                    resolved_at=None,
                    cancelled_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise DisputeAlreadyExists(f"Deal {deal_id} dispute was reopened concurrently")
            await session.refresh(existing)
            logger.info(f"⚖️ DISPUTE_REOPENED: #{existing.id} for {deal_id}")
            return existing

        dispute = Dispute(
            deal_id=deal_id,
            opened_by=opened_by,
            reason=reason,
            media=list(media or []),
            status=DisputeStatus.OPEN.value,
            created_at=now,
            updated_at=now,
        )
        session.add(dispute)
        try:
            await session.flush()
        except IntegrityError:
            raise DisputeAlreadyExists(f"Deal {deal_id} already has a dispute")
        return dispute

    async def comment_count(self, session: AsyncSession, dispute_id: int) -> int:
        result = await session.execute(
            select(func.count(DisputeComment.id)).where(DisputeComment.dispute_id == dispute_id)
        )
        return int(result.scalar_one())

    async def add_comment(
        self, session: AsyncSession, dispute_id: int, author_id: int, text: str, is_admin: bool, now: datetime
    ) -> DisputeComment:
        if await self.comment_count(session, dispute_id) >= Config.MAX_DISPUTE_COMMENTS:
            raise CommentLimit(f"Dispute {dispute_id} reached {Config.MAX_DISPUTE_COMMENTS} comments")
        comment = DisputeComment(
            dispute_id=dispute_id, author_id=author_id, is_admin=is_admin, text=text, created_at=now
        )
        session.add(comment)
        await session.flush()
        return comment

    async def list_comments(self, session: AsyncSession, dispute_id: int) -> List[DisputeComment]:
        result = await session.execute(
            select(DisputeComment).where(DisputeComment.dispute_id == dispute_id).order_by(DisputeComment.id)
        )
        return list(result.scalars().all())

    async def mark_in_review(self, session: AsyncSession, dispute_id: int, arbiter_id: int, now: datetime) -> bool:
        result = await session.execute(
            update(Dispute)
            .where(Dispute.id == dispute_id, Dispute.status == DisputeStatus.OPEN.value)
            .values(status=DisputeStatus.IN_REVIEW.value, arbiter_id=arbiter_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def resolve(
        self,
        session: AsyncSession,
        dispute_id: int,
        decision: DisputeDecision,
        arbiter_id: int,
        now: datetime,
        note: Optional[str] = None,
    ) -> bool:
        result = await session.execute(
            update(Dispute)
            .where(Dispute.id == dispute_id, Dispute.status != DisputeStatus.RESOLVED.value)
            .values(
                status=DisputeStatus.RESOLVED.value,
                decision=decision.value,
                arbiter_id=arbiter_id,
                resolution_note=note,
                resolved_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def cancel(self, session: AsyncSession, dispute_id: int, arbiter_id: Optional[int], now: datetime) -> bool:
        """Close without a decision (the deal goes back to work)"""
        result = await session.execute(
            update(Dispute)
            .where(Dispute.id == dispute_id, Dispute.status != DisputeStatus.RESOLVED.value)
            .values(
                status=DisputeStatus.RESOLVED.value,
                decision=None,
                arbiter_id=arbiter_id,
                resolved_at=now,
                cancelled_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
