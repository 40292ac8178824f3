"""
Partner Service
Platform creation and credentials, plus read-only views over DLC state for the
partner portal. Stats are served from the denormalized copy kept by PartnerLedger.
"""

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from database import managed_session
from models import AuditEventType, Deal, Platform
from services.audit_logger import AuditLogger
from services.deal_repository import DealRepository
from services.partner_ledger import PartnerLedger, PlatformStats
from utils.clock import Clock
from utils.exception_handler import InvariantViolation
from utils.fee_calculator import to_decimal

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 200_000
PLATFORM_CODE_PATTERN = re.compile(r"^[a-z0-9_]{2,32}$")


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS).hex()
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest}"


def verify_password(password: str, stored: str) -> bool:
    try:
        scheme, iterations, salt, digest = stored.split("$")
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations)).hex()
    return hmac.compare_digest(candidate, digest)


class PartnerService:
    def __init__(
        self,
        session_factory,
        clock: Clock,
        ledger: PartnerLedger,
        audit: AuditLogger,
        deals: Optional[DealRepository] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.ledger = ledger
        self.audit = audit
        self.deals = deals or DealRepository()

    async def create_platform(
        self,
        code: str,
        name: str,
        login: str,
        password: str,
        commission_percent: Any = Decimal("10"),
    ) -> Platform:
        code = (code or "").strip().lower()
        if not PLATFORM_CODE_PATTERN.match(code):
            raise InvariantViolation(f"Invalid platform code: {code!r}")
        percent = to_decimal(commission_percent)
        if not Decimal("0") <= percent <= Decimal("100"):
            raise InvariantViolation(f"Commission percent must be 0-100, got {percent}")
        if not password or len(password) < 8:
            raise InvariantViolation("Partner password must be at least 8 characters")

        now = self.clock.now()
        platform = Platform(
            code=code,
            name=name.strip(),
            login=login.strip().lower(),
            password_hash=hash_password(password),
            commission_percent=percent,
            is_active=True,
            stats=PlatformStats().to_dict(),
            created_at=now,
        )
        async with managed_session(self.session_factory) as session:
            session.add(platform)
            try:
                await session.flush()
            except IntegrityError:
                raise InvariantViolation(f"Platform code or login already taken: {code}")
            await self.audit.record(
                session,
                AuditEventType.PLATFORM_CREATED,
                entity_type="platform",
                entity_id=code,
                description=name,
                extra_data={"commission_percent": str(percent)},
            )

        logger.info(f"🏢 PLATFORM_CREATED: {code} ({name}) share={percent}%")
        return platform

    async def check_credentials(self, login: str, password: str) -> Optional[Platform]:
        async with managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Platform).where(Platform.login == (login or "").strip().lower())
            )
            platform = result.scalar_one_or_none()
        if platform is None or not platform.is_active:
            return None
        if not verify_password(password or "", platform.password_hash):
            logger.info(f"🔐 PARTNER_LOGIN_REJECTED: {login}")
            return None
        return platform

    async def get_stats(self, platform_code: str) -> Optional[PlatformStats]:
        return await self.ledger.get_stats(platform_code)

    async def list_deals(
        self,
        platform_code: str,
        statuses: Optional[Iterable[str]] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Deal]:
        async with managed_session(self.session_factory) as session:
            return await self.deals.list_for_platform(
                session,
                platform_code,
                statuses=statuses,
                created_from=created_from,
                created_to=created_to,
                include_hidden=False,
                limit=limit,
                offset=offset,
            )

    @staticmethod
    def summarize(deal: Deal) -> Dict[str, Any]:
        """Partner-safe view of a deal (no addresses or hashes)"""
        return {
            "deal_id": deal.deal_id,
            "status": deal.status,
            "amount": str(deal.amount),
            "asset": deal.asset,
            "commission": str(deal.commission),
            "created_at": deal.created_at.isoformat() if deal.created_at else None,
            "completed_at": deal.completed_at.isoformat() if deal.completed_at else None,
        }
