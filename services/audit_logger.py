"""
Audit Logging System
Append-only audit trail for deal transitions, admin actions and failures
"""

import json
import logging
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import managed_session
from models import AuditEventType, AuditLog
from utils.clock import Clock

logger = logging.getLogger(__name__)


class AuditLogger:
    """Service for audit trail writes and admin reporting reads"""

    def __init__(self, session_factory, clock: Clock):
        self.session_factory = session_factory
        self.clock = clock
        # JSON lines for log shipping; handlers are configured by the process entrypoint
        self.audit_logger = logging.getLogger('audit')

    def _build(
        self,
        event_type: Union[AuditEventType, str],
        entity_type: str,
        entity_id: Any,
        deal_id: Optional[str] = None,
        dispute_id: Optional[int] = None,
        user_id: Optional[int] = None,
        admin_id: Optional[int] = None,
        description: Optional[str] = None,
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        event_value = event_type.value if isinstance(event_type, AuditEventType) else str(event_type)
        entry = AuditLog(
            event_type=event_value,
            entity_type=entity_type,
            entity_id=str(entity_id),
            deal_id=deal_id,
            dispute_id=dispute_id,
            user_id=user_id,
            admin_id=admin_id,
            description=description,
            extra_data=extra_data or {},
            created_at=self.clock.now(),
        )
        self.audit_logger.info(json.dumps({
            'timestamp': entry.created_at.isoformat(),
            'event_type': event_value,
            'entity': f"{entity_type}:{entity_id}",
            'user_id': user_id,
            'admin_id': admin_id,
            'details': entry.extra_data,
        }, default=str))
        return entry

    async def record(self, session: AsyncSession, event_type: Union[AuditEventType, str], **kwargs) -> AuditLog:
        """Add an audit entry to the caller's unit of work (commits with the transition)"""
        kwargs.setdefault("entity_type", "deal")
        if "entity_id" not in kwargs:
            kwargs["entity_id"] = kwargs.get("deal_id") or ""
        entry = self._build(event_type, **kwargs)
        session.add(entry)
        return entry

    async def record_detached(self, event_type: Union[AuditEventType, str], **kwargs) -> AuditLog:
        """Write an audit entry in its own transaction (used when the operation aborted)"""
        async with managed_session(self.session_factory) as session:
            entry = await self.record(session, event_type, **kwargs)
        return entry

    async def list_for_deal(self, deal_id: str) -> List[AuditLog]:
        async with managed_session(self.session_factory) as session:
            result = await session.execute(
                select(AuditLog).where(AuditLog.deal_id == deal_id).order_by(AuditLog.id)
            )
            return list(result.scalars().all())

    async def list_recent(
        self, event_type: Optional[Union[AuditEventType, str]] = None, limit: int = 50
    ) -> List[AuditLog]:
        query = select(AuditLog).order_by(AuditLog.id.desc()).limit(limit)
        if event_type is not None:
            value = event_type.value if isinstance(event_type, AuditEventType) else event_type
            query = query.where(AuditLog.event_type == value)
        async with managed_session(self.session_factory) as session:
            result = await session.execute(query)
            return list(result.scalars().all())
