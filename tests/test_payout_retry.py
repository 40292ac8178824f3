"""
Payout retry tests
Backoff schedule, resubmission after a failed submit and confirmation polling
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from config import Config
from conftest import BUYER_ID
from database import managed_session
from models import AuditEventType, DealStatus
from services.blockchain_port import TransactionState
from services.payout_retry_service import compute_backoff_delay
from utils.exception_handler import BlockchainUnavailable


async def _failed_confirm(core, driver, blockchain):
    deal = await driver.work_submitted()
    blockchain.payout_error = ConnectionError("node down")
    with pytest.raises(BlockchainUnavailable):
        await core.engine.confirm(deal.deal_id, BUYER_ID)
    return deal


async def _audit_types(core, deal_id):
    return [e.event_type for e in await core.audit.list_for_deal(deal_id)]


class TestBackoff:
    @pytest.mark.parametrize("attempt,expected", [
        (0, 60),
        (1, 60),
        (2, 120),
        (3, 240),
        (8, 7680),
        (9, 15360),
        (10, 21600),
        (30, 21600),
    ])
    def test_doubling_with_cap(self, attempt, expected):
        assert compute_backoff_delay(attempt) == expected

    def test_jitter_stays_in_band(self):
        for _ in range(50):
            assert 60 <= compute_backoff_delay(2, jitter=True) < 180


class TestResubmission:
    @pytest.mark.asyncio
    async def test_retry_succeeds_once_chain_recovers(self, core, driver, blockchain, clock):
        deal = await _failed_confirm(core, driver, blockchain)
        blockchain.payout_error = None

        clock.advance(seconds=59)
        assert (await core.payout_retry.process_due())["due"] == 0

        clock.advance(seconds=1)
        assert await core.payout_retry.process_due() == {"due": 1, "processed": 1, "errors": 0}

        deal = await core.engine.get_deal(deal.deal_id)
        assert deal.status == DealStatus.COMPLETED.value
        assert deal.released_amount == Decimal("475")
        assert deal.payout_pending is False
        assert deal.payout_attempts == 0
        assert deal.pending_payout is None
        assert len(blockchain.calls_named("release")) == 2

    @pytest.mark.asyncio
    async def test_failures_back_off(self, core, driver, blockchain, clock):
        deal = await _failed_confirm(core, driver, blockchain)
        clock.advance(seconds=60)
        await core.payout_retry.process_due()

        deal = await core.engine.get_deal(deal.deal_id)
        assert deal.payout_attempts == 2
        assert deal.next_payout_attempt_at == clock.now() + timedelta(seconds=120)
        assert deal.status == DealStatus.WORK_SUBMITTED.value

    @pytest.mark.asyncio
    async def test_exhausted_retries_wait_for_admin(self, core, driver, blockchain, clock, monkeypatch):
        monkeypatch.setattr(Config, "PAYOUT_MAX_ATTEMPTS", 3)
        deal = await _failed_confirm(core, driver, blockchain)
        clock.advance(seconds=60)
        await core.payout_retry.process_due()
        clock.advance(seconds=120)
        await core.payout_retry.process_due()

        deal = await core.engine.get_deal(deal.deal_id)
        assert deal.payout_attempts == 3
        assert deal.payout_pending is True
        assert deal.next_payout_attempt_at is None
        assert AuditEventType.PAYOUT_FAILED.value in await _audit_types(core, deal.deal_id)

        clock.advance(days=2)
        assert (await core.payout_retry.process_due())["due"] == 0

    @pytest.mark.asyncio
    async def test_retry_on_settled_deal_is_a_no_op(self, core, driver):
        deal = await driver.work_submitted()
        await core.engine.confirm(deal.deal_id, BUYER_ID)
        assert await core.engine.retry_payout(deal.deal_id) is None

    @pytest.mark.asyncio
    async def test_dispute_supersedes_queued_release(self, core, driver, blockchain, clock):
        deal = await _failed_confirm(core, driver, blockchain)
        await core.engine.open_dispute(deal.deal_id, BUYER_ID, "Files are corrupt")

        deal = await core.engine.get_deal(deal.deal_id)
        assert deal.status == DealStatus.DISPUTE.value
        assert deal.payout_pending is False
        assert deal.pending_payout is None
        assert deal.next_payout_attempt_at is None

        clock.advance(minutes=5)
        assert (await core.payout_retry.process_due())["due"] == 0
        assert len(blockchain.calls_named("release")) == 1

    @pytest.mark.asyncio
    async def test_unsettleable_pending_payout_is_dropped(self, core, driver, blockchain, clock):
        deal = await _failed_confirm(core, driver, blockchain)
        async with managed_session(core.session_factory) as session:
            assert await core.deals.compare_and_set(session, deal.deal_id, DealStatus.WORK_SUBMITTED, DealStatus.LOCKED)

        clock.advance(seconds=60)
        assert await core.engine.retry_payout(deal.deal_id) is None
        deal = await core.engine.get_deal(deal.deal_id)
        assert deal.payout_pending is False
        assert deal.next_payout_attempt_at is None
        assert (await core.payout_retry.process_due())["due"] == 0


class TestConfirmationPolling:
    @pytest.mark.asyncio
    async def test_confirmed_transaction_clears_pending(self, core, driver, blockchain, clock):
        deal = await driver.work_submitted()
        blockchain.payout_confirmed = False
        deal = await core.engine.confirm(deal.deal_id, BUYER_ID)
        tx_hash = deal.payout_tx_hash

        clock.advance(seconds=60)
        await core.payout_retry.process_due()

        deal = await core.engine.get_deal(deal.deal_id)
        assert deal.payout_pending is False
        assert deal.pending_payout is None
        assert deal.payout_tx_hash == tx_hash
        assert blockchain.calls_named("get_transaction_status") == [(tx_hash,)]
        assert AuditEventType.PAYOUT_CONFIRMED.value in await _audit_types(core, deal.deal_id)

    @pytest.mark.asyncio
    async def test_pending_transaction_polled_again(self, core, driver, blockchain, clock):
        deal = await driver.work_submitted()
        blockchain.payout_confirmed = False
        deal = await core.engine.confirm(deal.deal_id, BUYER_ID)
        blockchain.tx_states[deal.payout_tx_hash] = TransactionState.PENDING

        clock.advance(seconds=60)
        await core.payout_retry.process_due()

        deal = await core.engine.get_deal(deal.deal_id)
        assert deal.status == DealStatus.COMPLETED.value
        assert deal.payout_pending is True
        assert deal.payout_attempts == 1
        assert deal.next_payout_attempt_at == clock.now() + timedelta(seconds=60)
        assert len(blockchain.calls_named("release")) == 1

    @pytest.mark.asyncio
    async def test_failed_transaction_is_resubmitted(self, core, driver, blockchain, clock):
        deal = await driver.work_submitted()
        blockchain.payout_confirmed = False
        deal = await core.engine.confirm(deal.deal_id, BUYER_ID)
        first_tx = deal.payout_tx_hash
        blockchain.tx_states[first_tx] = TransactionState.FAILED
        blockchain.payout_confirmed = True

        clock.advance(seconds=60)
        await core.payout_retry.process_due()

        deal = await core.engine.get_deal(deal.deal_id)
        assert deal.status == DealStatus.COMPLETED.value
        assert deal.payout_tx_hash != first_tx
        assert deal.payout_pending is False
        assert deal.released_amount == Decimal("475")
        assert len(blockchain.calls_named("release")) == 2
