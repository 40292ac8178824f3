"""
Tests for the atomic counter, the conversational session store and the clock
"""

import asyncio

import pytest

from models import SessionType
from services.counter_service import CounterService, format_deal_id, parse_deal_number
from services.session_store import SessionStore
from utils.clock import Clock, SystemClock


class TestCounterService:
    """Upsert-and-increment counters"""

    @pytest.mark.asyncio
    async def test_first_value_is_one(self, session_factory):
        counter = CounterService(session_factory)
        assert await counter.get_next_value("deal_id") == 1
        assert await counter.get_next_value("deal_id") == 2

    @pytest.mark.asyncio
    async def test_counters_are_independent(self, session_factory):
        counter = CounterService(session_factory)
        await counter.get_next_value("deal_id")
        assert await counter.get_next_value("receipt") == 1

    @pytest.mark.asyncio
    async def test_next_deal_id_format(self, session_factory):
        counter = CounterService(session_factory)
        assert await counter.next_deal_id() == "D-1"
        assert await counter.next_deal_id() == "D-2"

    @pytest.mark.asyncio
    async def test_concurrent_allocation_has_no_duplicates(self, session_factory):
        counter = CounterService(session_factory)
        values = await asyncio.gather(*(counter.get_next_value("deal_id") for _ in range(10)))
        assert sorted(values) == list(range(1, 11))

    def test_deal_id_helpers(self):
        assert format_deal_id(42) == "D-42"
        assert parse_deal_number("D-42") == 42
        with pytest.raises(ValueError):
            parse_deal_number("X-1")


class TestSessionStore:
    @pytest.mark.asyncio
    async def test_set_and_get(self, session_factory, clock):
        store = SessionStore(session_factory, clock, ttl_hours=1)
        await store.set(1001, SessionType.CREATE_DEAL, {"step": "amount", "amount": "500"})
        assert await store.get(1001, "create_deal") == {"step": "amount", "amount": "500"}
        assert await store.get(1001, SessionType.DISPUTE) is None

    @pytest.mark.asyncio
    async def test_set_overwrites_and_extends_ttl(self, session_factory, clock):
        store = SessionStore(session_factory, clock, ttl_hours=1)
        await store.set(1001, SessionType.DISPUTE, {"reason": "draft"})
        clock.advance(minutes=50)
        await store.set(1001, SessionType.DISPUTE, {"reason": "final"})
        clock.advance(minutes=50)
        assert await store.get(1001, SessionType.DISPUTE) == {"reason": "final"}

    @pytest.mark.asyncio
    async def test_expired_session_is_hidden_then_purged(self, session_factory, clock):
        store = SessionStore(session_factory, clock, ttl_hours=1)
        await store.set(1001, SessionType.NAVIGATION, {"stack": ["main"]})
        await store.set(2002, SessionType.NAVIGATION, {"stack": []})
        clock.advance(hours=2)
        assert await store.get(1001, SessionType.NAVIGATION) is None
        assert await store.purge_expired() == 2

    @pytest.mark.asyncio
    async def test_delete_and_clear_user(self, session_factory, clock):
        store = SessionStore(session_factory, clock)
        await store.set(1001, SessionType.CREATE_DEAL, {})
        await store.set(1001, SessionType.SCREEN_DATA, {"page": 2})
        assert await store.delete(1001, SessionType.CREATE_DEAL)
        assert not await store.delete(1001, SessionType.CREATE_DEAL)
        assert await store.clear_user(1001) == 1

    @pytest.mark.asyncio
    async def test_unknown_session_type_rejected(self, session_factory, clock):
        store = SessionStore(session_factory, clock)
        with pytest.raises(ValueError):
            await store.set(1001, "shopping_cart", {})


class TestClock:
    def test_clock_is_abstract(self):
        with pytest.raises(TypeError):
            Clock()

    def test_system_clock_is_naive_utc(self):
        now = SystemClock().now()
        assert now.tzinfo is None
        assert isinstance(SystemClock(), Clock)
