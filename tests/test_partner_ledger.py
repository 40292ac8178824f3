"""
Partner ledger and partner portal tests
"""

from decimal import Decimal

import pytest

from conftest import ADMIN_ID, BUYER_ID, SELLER_ID
from database import managed_session
from services.partner_ledger import LedgerEntry, PlatformStats, compute_platform_stats
from services.partner_service import hash_password, verify_password
from utils.exception_handler import InvariantViolation


async def _affiliate(core, driver, telegram_id, code):
    await driver.register(telegram_id)
    async with managed_session(core.session_factory) as session:
        await core.users.link_platform(session, telegram_id, code)


class TestComputePlatformStats:
    def test_aggregates_at_completion_prices(self):
        entries = [
            LedgerEntry(Decimal("500"), Decimal("25"), Decimal("8.6"), Decimal("0.25")),
            LedgerEntry(Decimal("200"), Decimal("15"), Decimal("17.2"), Decimal("0.30")),
        ]
        stats = compute_platform_stats(entries, Decimal("10"))
        assert stats.total_volume == Decimal("700")
        assert stats.total_commission == Decimal("40")
        assert stats.total_trx_spent == Decimal("25.8")
        assert stats.total_trx_spent_usdt == Decimal("7.310000")
        assert stats.net_profit == Decimal("32.69")
        assert stats.payout == Decimal("3.269000")
        assert stats.platform_pure_profit == Decimal("29.421")

    def test_loss_making_platform_gets_no_payout(self):
        entries = [LedgerEntry(Decimal("500"), Decimal("0"), Decimal("10"), Decimal("0.25"))]
        stats = compute_platform_stats(entries, Decimal("50"))
        assert stats.net_profit == Decimal("-2.5")
        assert stats.payout == Decimal("0")
        assert stats.platform_pure_profit == Decimal("-2.5")

    def test_empty(self):
        stats = compute_platform_stats([], Decimal("10"))
        assert stats.total_volume == Decimal("0")
        assert stats.payout == Decimal("0")

    @pytest.mark.parametrize("percent", ["0", "10", "33.3", "100"])
    def test_profit_split_adds_up(self, percent):
        entries = [LedgerEntry(Decimal("1000"), Decimal("50"), Decimal("7.6"), Decimal("0.12"))]
        stats = compute_platform_stats(entries, Decimal(percent))
        assert stats.net_profit == stats.total_commission - stats.total_trx_spent_usdt
        assert stats.payout + stats.platform_pure_profit == stats.net_profit

    def test_stats_dict_round_trip(self):
        stats = PlatformStats(total_volume=Decimal("12.5"), total_deals=3)
        restored = PlatformStats.from_dict(stats.to_dict())
        assert restored == stats


class TestPartnerLedger:
    @pytest.mark.asyncio
    async def test_stats_follow_lifecycle_events(self, core, driver):
        await core.partners.create_platform("alpha", "Alpha Market", "alpha_admin", "s3cret-pass", "10")
        await _affiliate(core, driver, BUYER_ID, "alpha")

        deal = await driver.work_submitted()
        assert deal.platform_code == "alpha"

        stats = await core.partners.get_stats("alpha")
        assert stats.total_deals == 1
        assert stats.active_deals == 1
        assert stats.total_users == 2

        await core.engine.confirm(deal.deal_id, BUYER_ID)
        stats = await core.partners.get_stats("alpha")
        assert stats.active_deals == 0
        assert stats.completed_deals == 1
        assert stats.total_volume == Decimal("500")
        assert stats.total_commission == Decimal("25")
        assert stats.total_trx_spent == Decimal("8.6")
        assert stats.total_trx_spent_usdt == Decimal("2.15")
        assert stats.net_profit == Decimal("22.85")
        assert stats.payout == Decimal("2.285")

    @pytest.mark.asyncio
    async def test_completion_price_is_frozen(self, core, driver, prices):
        await core.partners.create_platform("alpha", "Alpha Market", "alpha_admin", "s3cret-pass")
        await _affiliate(core, driver, SELLER_ID, "alpha")
        deal = await driver.work_submitted()
        await core.engine.confirm(deal.deal_id, BUYER_ID)
        before = await core.partners.get_stats("alpha")

        prices.fixed_price = Decimal("1.00")
        assert await prices.refresh_price() == Decimal("1.00")
        after = await core.ledger.recompute("alpha")
        assert after.total_trx_spent_usdt == before.total_trx_spent_usdt

    @pytest.mark.asyncio
    async def test_recompute_is_idempotent(self, core, driver):
        await core.partners.create_platform("alpha", "Alpha Market", "alpha_admin", "s3cret-pass")
        await _affiliate(core, driver, BUYER_ID, "alpha")
        deal, _ = await driver.disputed()
        await core.engine.resolve(deal.deal_id, ADMIN_ID, "refund_buyer")

        first = await core.ledger.recompute("alpha")
        second = await core.ledger.recompute("alpha")
        assert first == second
        assert first.disputed_deals == 1
        assert first.total_commission == Decimal("0")

    @pytest.mark.asyncio
    async def test_unknown_platform(self, core):
        assert await core.ledger.recompute("ghost") is None
        assert await core.partners.get_stats("ghost") is None

    @pytest.mark.asyncio
    async def test_deals_without_platform_emit_nothing(self, core, driver):
        await core.partners.create_platform("alpha", "Alpha Market", "alpha_admin", "s3cret-pass")
        await driver.create()
        assert (await core.partners.get_stats("alpha")).total_deals == 0


class TestPartnerService:
    @pytest.mark.asyncio
    async def test_credentials(self, core):
        platform = await core.partners.create_platform("beta", "Beta", "Beta_Login", "correct-horse")
        assert platform.password_hash.startswith("pbkdf2_sha256$")
        assert "correct-horse" not in platform.password_hash

        assert (await core.partners.check_credentials("beta_login", "correct-horse")).code == "beta"
        assert await core.partners.check_credentials("beta_login", "wrong-horse") is None
        assert await core.partners.check_credentials("nobody", "correct-horse") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,percent,password", [
        ("Bad Code!", "10", "long-enough"),
        ("gamma", "101", "long-enough"),
        ("gamma", "10", "short"),
    ])
    async def test_invalid_platform(self, core, code, percent, password):
        with pytest.raises(InvariantViolation):
            await core.partners.create_platform(code, "Gamma", "gamma", password, percent)

    @pytest.mark.asyncio
    async def test_duplicate_code(self, core):
        await core.partners.create_platform("delta", "Delta", "delta", "long-enough")
        with pytest.raises(InvariantViolation):
            await core.partners.create_platform("delta", "Delta 2", "delta2", "long-enough")

    @pytest.mark.asyncio
    async def test_list_deals_hides_hidden(self, core, driver):
        await core.partners.create_platform("alpha", "Alpha Market", "alpha_admin", "s3cret-pass")
        await _affiliate(core, driver, BUYER_ID, "alpha")
        first = await driver.create()
        await core.engine.cancel(first.deal_id, BUYER_ID)
        second = await driver.create()
        await core.admin.toggle_deal_hidden(first.deal_id, ADMIN_ID)

        deals = await core.partners.list_deals("alpha")
        assert [d.deal_id for d in deals] == [second.deal_id]
        assert [d.deal_id for d in await core.partners.list_deals("alpha", statuses=["cancelled"])] == []

        summary = core.partners.summarize(deals[0])
        assert summary["deal_id"] == second.deal_id
        assert "multisig_address" not in summary
        assert "buyer_address" not in summary

    def test_password_helpers(self):
        stored = hash_password("hunter22", salt="abc")
        assert stored == hash_password("hunter22", salt="abc")
        assert verify_password("hunter22", stored)
        assert not verify_password("hunter23", stored)
        assert not verify_password("hunter22", "plain")
        assert not verify_password("hunter22", "md5$1$a$b")
