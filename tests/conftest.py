"""
Shared fixtures for the deal lifecycle core test suite.

Key Components:
1. Fresh SQLite file database per test (aiosqlite), schema created up front
2. Frozen clock, scriptable blockchain fake and recording notifier
3. Fully wired DealLifecycleCore built by the production container
4. DealDriver helper that walks a deal to a given status
"""

import logging
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio

from config import Config
from database import build_async_engine, build_session_factory, create_tables
from models import Deal, DealRole
from services.dlc_container import build_container
from fixtures import FakeBlockchain, FixedPriceService, FrozenClock, RecordingNotifier

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

BUYER_ID = 1001
SELLER_ID = 2002
OTHER_ID = 3003
ADMIN_ID = 9001
SUPERADMIN_ID = 9002

BUYER_WALLET = "TBuyerPayoutWallet000000000000001"
SELLER_WALLET = "TSellerPayoutWallet00000000000002"
SERVICE_WALLET = "TServiceWallet0000000000000000003"


@pytest.fixture(autouse=True)
def test_config(monkeypatch):
    """Pin role lists and limits so tests never depend on the developer's .env"""
    monkeypatch.setattr(Config, "ADMIN_IDS", {ADMIN_ID})
    monkeypatch.setattr(Config, "SUPERADMIN_IDS", {SUPERADMIN_ID})
    monkeypatch.setattr(Config, "SERVICE_WALLET_ADDRESS", SERVICE_WALLET)
    monkeypatch.setattr(Config, "MIN_DEAL_AMOUNT", Decimal("50"))
    monkeypatch.setattr(Config, "COMMISSION_RATE", Decimal("0.05"))
    monkeypatch.setattr(Config, "MIN_COMMISSION", Decimal("15"))
    monkeypatch.setattr(Config, "COMMISSION_THRESHOLD", Decimal("300"))
    monkeypatch.setattr(Config, "MIN_DEADLINE_HOURS", 24)
    monkeypatch.setattr(Config, "MAX_DEADLINE_HOURS", 720)
    monkeypatch.setattr(Config, "AUTO_RELEASE_WINDOW_HOURS", 72)
    monkeypatch.setattr(Config, "AUTO_BAN_LOSS_STREAK", 3)
    monkeypatch.setattr(Config, "PAYOUT_MAX_ATTEMPTS", 10)
    monkeypatch.setattr(Config, "PAYOUT_RETRY_BASE_DELAY", 60)
    monkeypatch.setattr(Config, "PAYOUT_RETRY_MAX_DELAY", 6 * 3600)
    monkeypatch.setattr(Config, "BLOCKCHAIN_CALL_TIMEOUT", 2.0)
    monkeypatch.setattr(Config, "MULTISIG_ACTIVATION_TRX", Decimal("5"))
    monkeypatch.setattr(Config, "FALLBACK_TRX_AMOUNT", Decimal("30"))
    monkeypatch.setattr(Config, "TRX_TX_FEE", Decimal("1.1"))
    monkeypatch.setattr(Config, "MAX_DISPUTE_COMMENTS", 100)
    monkeypatch.setattr(Config, "MAX_SAVED_WALLETS", 5)
    return Config


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Per-test SQLite database file"""
    engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dlc_test.db'}")
    assert await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def blockchain():
    return FakeBlockchain()


@pytest.fixture
def notifier_port():
    return RecordingNotifier()


@pytest.fixture
def prices(clock):
    return FixedPriceService(clock, Decimal("0.25"))


@pytest_asyncio.fixture
async def core(session_factory, blockchain, notifier_port, clock, prices):
    """The production container wired to fakes"""
    dlc = build_container(session_factory, blockchain, notifier_port, clock=clock, prices=prices)
    yield dlc
    await dlc.shutdown()


class DealDriver:
    """Walks deals through the lifecycle with sensible defaults"""

    def __init__(self, core):
        self.core = core
        self.engine = core.engine
        self._tx_counter = 0

    async def register(self, telegram_id: int, username: Optional[str] = None):
        return await self.engine.register_user(telegram_id, username or f"user{telegram_id}")

    async def create(
        self,
        amount="500",
        commission_type="buyer",
        creator_role=DealRole.BUYER,
        deadline_hours: int = 48,
        buyer_id: int = BUYER_ID,
        seller_id: int = SELLER_ID,
        creator_wallet: Optional[str] = None,
    ) -> Deal:
        await self.register(buyer_id)
        await self.register(seller_id)
        role = DealRole(creator_role) if not isinstance(creator_role, DealRole) else creator_role
        if role == DealRole.BUYER:
            creator_id, counterparty_id = buyer_id, seller_id
            creator_wallet = creator_wallet or BUYER_WALLET
        else:
            creator_id, counterparty_id = seller_id, buyer_id
        return await self.engine.create_deal(
            creator_id,
            counterparty_id,
            role,
            "Logo design",
            "Vector logo with three revisions",
            Decimal(str(amount)),
            commission_type,
            deadline_hours,
            creator_wallet=creator_wallet,
        )

    async def waiting_for_deposit(self, **kwargs) -> Deal:
        deal = await self.create(**kwargs)
        return await self.engine.provide_wallet(deal.deal_id, deal.seller_id, SELLER_WALLET)

    async def locked(self, deposit=None, **kwargs) -> Deal:
        deal = await self.waiting_for_deposit(**kwargs)
        self._tx_counter += 1
        amount = Decimal(str(deposit)) if deposit is not None else deal.amount
        return await self.engine.deposit_detected(deal.deal_id, f"deposit_tx_{self._tx_counter}", amount)

    async def work_submitted(self, **kwargs) -> Deal:
        deal = await self.locked(**kwargs)
        return await self.engine.submit_work(deal.deal_id, deal.seller_id, "Final files uploaded")

    async def disputed(self, opener: str = "buyer", submitted: bool = False, **kwargs):
        deal = await (self.work_submitted(**kwargs) if submitted else self.locked(**kwargs))
        opener_id = deal.buyer_id if opener == "buyer" else deal.seller_id
        dispute = await self.engine.open_dispute(deal.deal_id, opener_id, "Work does not match the brief")
        return await self.engine.get_deal(deal.deal_id), dispute


@pytest.fixture
def driver(core):
    return DealDriver(core)
