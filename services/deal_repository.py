"""
Deal persistence.

All status changes go through `compare_and_set`, a conditional UPDATE on
(deal_id, expected status). A zero rowcount means another writer moved the
deal first; the caller aborts with StaleState.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Union

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models import Deal, DealStatus, WAITING_STATUSES

logger = logging.getLogger(__name__)

WORK_STATUSES = (DealStatus.LOCKED.value, DealStatus.IN_PROGRESS.value, DealStatus.WORK_SUBMITTED.value)


def _status_value(status: Union[DealStatus, str]) -> str:
    return status.value if isinstance(status, DealStatus) else status


class DealRepository:
    async def add(self, session: AsyncSession, deal: Deal) -> Deal:
        session.add(deal)
        await session.flush()
        return deal

    async def get(self, session: AsyncSession, deal_id: str) -> Optional[Deal]:
        result = await session.execute(select(Deal).where(Deal.deal_id == deal_id))
        return result.scalar_one_or_none()

    async def get_by_multisig(
        self, session: AsyncSession, address: str, status: Optional[DealStatus] = None
    ) -> Optional[Deal]:
        query = select(Deal).where(Deal.multisig_address == address)
        if status is not None:
            query = query.where(Deal.status == status.value)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def compare_and_set(
        self,
        session: AsyncSession,
        deal_id: str,
        expected_status: Union[DealStatus, str],
        new_status: Optional[Union[DealStatus, str]] = None,
        **values: Any,
    ) -> bool:
        """Conditionally update a deal still in expected_status; returns False when the row moved on"""
        if new_status is not None:
            values["status"] = _status_value(new_status)
        if not values:
            return True
        stmt = (
            update(Deal)
            .where(Deal.deal_id == deal_id, Deal.status == _status_value(expected_status))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount == 0:
            logger.warning(
                f"⚠️ DEAL_CAS_FAILED: {deal_id} expected {_status_value(expected_status)} "
                f"-> {values.get('status', 'field update')}"
            )
            return False
        return True

    async def list_expirable(self, session: AsyncSession, now: datetime) -> List[str]:
        """Unfunded deals whose deadline has passed"""
        result = await session.execute(
            select(Deal.deal_id)
            .where(Deal.status.in_([s.value for s in WAITING_STATUSES]), Deal.deadline <= now)
            .order_by(Deal.deadline)
        )
        return list(result.scalars().all())

    async def list_auto_release_due(self, session: AsyncSession, now: datetime, window_hours: int) -> List[str]:
        """Submitted work whose acceptance window has elapsed; pending payouts belong to the retry queue"""
        cutoff = now - timedelta(hours=window_hours)
        result = await session.execute(
            select(Deal.deal_id)
            .where(
                Deal.status == DealStatus.WORK_SUBMITTED.value,
                Deal.deadline <= cutoff,
                Deal.payout_pending.is_(False),
            )
            .order_by(Deal.deadline)
        )
        return list(result.scalars().all())

    async def list_deadline_warnings(self, session: AsyncSession, now: datetime) -> List[Deal]:
        """Funded deals past their deadline that have not been warned yet"""
        result = await session.execute(
            select(Deal).where(
                Deal.status.in_(WORK_STATUSES),
                Deal.deadline <= now,
                Deal.deadline_notification_sent.is_(False),
            )
        )
        return list(result.scalars().all())

    async def mark_deadline_warning_sent(self, session: AsyncSession, deal_id: str) -> bool:
        stmt = (
            update(Deal)
            .where(
                Deal.deal_id == deal_id,
                Deal.status.in_(WORK_STATUSES),
                Deal.deadline_notification_sent.is_(False),
            )
            .values(deadline_notification_sent=True)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount > 0

    async def list_waiting_for_deposit(self, session: AsyncSession) -> List[Deal]:
        result = await session.execute(
            select(Deal).where(
                Deal.status == DealStatus.WAITING_FOR_DEPOSIT.value,
                Deal.multisig_address.is_not(None),
            )
        )
        return list(result.scalars().all())

    async def list_payout_due(self, session: AsyncSession, now: datetime) -> List[str]:
        result = await session.execute(
            select(Deal.deal_id)
            .where(
                Deal.payout_pending.is_(True),
                Deal.next_payout_attempt_at.is_not(None),
                Deal.next_payout_attempt_at <= now,
            )
            .order_by(Deal.next_payout_attempt_at)
        )
        return list(result.scalars().all())

    async def list_for_user(
        self,
        session: AsyncSession,
        telegram_id: int,
        status: Optional[Union[DealStatus, str]] = None,
        limit: int = 20,
        include_hidden: bool = False,
    ) -> List[Deal]:
        query = select(Deal).where(or_(Deal.buyer_id == telegram_id, Deal.seller_id == telegram_id))
        if status is not None:
            query = query.where(Deal.status == _status_value(status))
        if not include_hidden:
            query = query.where(Deal.hidden.is_(False))
        result = await session.execute(query.order_by(Deal.id.desc()).limit(limit))
        return list(result.scalars().all())

    async def list_for_platform(
        self,
        session: AsyncSession,
        platform_code: str,
        statuses: Optional[Iterable[Union[DealStatus, str]]] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        include_hidden: bool = True,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Deal]:
        query = select(Deal).where(Deal.platform_code == platform_code)
        if statuses:
            query = query.where(Deal.status.in_([_status_value(s) for s in statuses]))
        if created_from is not None:
            query = query.where(Deal.created_at >= created_from)
        if created_to is not None:
            query = query.where(Deal.created_at < created_to)
        if not include_hidden:
            query = query.where(Deal.hidden.is_(False))
        query = query.order_by(Deal.id.desc()).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())
