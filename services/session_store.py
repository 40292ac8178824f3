"""
Conversational session store.

Buffers multi-message input flows (deal creation, dispute authoring) keyed by
(user, session type) with a TTL. Advisory only: deal state never depends on it.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Union

from sqlalchemy import delete, select

from config import Config
from database import dialect_insert, managed_session
from models import SessionType, UserSession
from utils.clock import Clock

logger = logging.getLogger(__name__)


def _session_type(value: Union[SessionType, str]) -> str:
    return value.value if isinstance(value, SessionType) else SessionType(value).value


class SessionStore:
    def __init__(self, session_factory, clock: Clock, ttl_hours: Optional[int] = None):
        self.session_factory = session_factory
        self.clock = clock
        self.ttl_hours = ttl_hours if ttl_hours is not None else Config.SESSION_TTL_HOURS

    async def get(self, user_id: int, session_type: Union[SessionType, str]) -> Optional[Dict[str, Any]]:
        """Return the stored blob, or None when missing or expired"""
        async with managed_session(self.session_factory) as session:
            result = await session.execute(
                select(UserSession).where(
                    UserSession.user_id == user_id,
                    UserSession.session_type == _session_type(session_type),
                )
            )
            row = result.scalar_one_or_none()
        if row is None or row.expires_at <= self.clock.now():
            return None
        return row.data

    async def set(self, user_id: int, session_type: Union[SessionType, str], data: Dict[str, Any]) -> None:
        now = self.clock.now()
        expires_at = now + timedelta(hours=self.ttl_hours)
        async with managed_session(self.session_factory) as session:
            stmt = dialect_insert(session, UserSession).values(
                user_id=user_id,
                session_type=_session_type(session_type),
                data=data,
                created_at=now,
                updated_at=now,
                expires_at=expires_at,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[UserSession.user_id, UserSession.session_type],
                set_={"data": stmt.excluded.data, "updated_at": now, "expires_at": expires_at},
            )
            await session.execute(stmt)

    async def delete(self, user_id: int, session_type: Union[SessionType, str]) -> bool:
        async with managed_session(self.session_factory) as session:
            result = await session.execute(
                delete(UserSession).where(
                    UserSession.user_id == user_id,
                    UserSession.session_type == _session_type(session_type),
                )
            )
        return result.rowcount > 0

    async def clear_user(self, user_id: int) -> int:
        async with managed_session(self.session_factory) as session:
            result = await session.execute(delete(UserSession).where(UserSession.user_id == user_id))
        return result.rowcount

    async def purge_expired(self) -> int:
        async with managed_session(self.session_factory) as session:
            result = await session.execute(
                delete(UserSession).where(UserSession.expires_at <= self.clock.now())
            )
        if result.rowcount:
            logger.info(f"🧹 SESSION_PURGE: removed {result.rowcount} expired sessions")
        return result.rowcount
