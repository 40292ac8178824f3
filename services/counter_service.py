"""
Atomic Counter Service
Race-free monotonic integers keyed by name, used to mint deal IDs
"""

import logging

from database import dialect_insert, managed_session
from models import Counter

logger = logging.getLogger(__name__)

DEAL_ID_COUNTER = "deal_id"


def format_deal_id(value: int) -> str:
    return f"D-{value}"


def parse_deal_number(deal_id: str) -> int:
    prefix, _, number = deal_id.partition("-")
    if prefix != "D" or not number.isdigit():
        raise ValueError(f"Malformed deal ID: {deal_id}")
    return int(number)


class CounterService:
    """Upsert-and-increment counters; values are monotonic, never recycled, not dense"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def get_next_value(self, name: str) -> int:
        # Own transaction: a wasted value after a later rollback is acceptable
        async with managed_session(self.session_factory) as session:
            stmt = dialect_insert(session, Counter).values(name=name, value=1)
            stmt = stmt.on_conflict_do_update(
                index_elements=[Counter.name],
                set_={"value": Counter.value + 1},
            ).returning(Counter.value)
            result = await session.execute(stmt)
            value = int(result.scalar_one())
        logger.debug(f"🔢 COUNTER: {name} -> {value}")
        return value

    async def next_deal_id(self) -> str:
        return format_deal_id(await self.get_next_value(DEAL_ID_COUNTER))
