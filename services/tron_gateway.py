"""
HTTP adapter for the TRON custody collaborator.

The collaborator owns the keys and exposes a small JSON API:
    POST /wallets/verify        {"address"}
    POST /multisig              {"buyer", "seller", "service"}
    POST /payouts/release       {"multisig", "to", "amount"}
    POST /payouts/refund        {"multisig", "to", "amount"}
    GET  /transactions/{hash}
    GET  /deposits?address=...

Deposit subscriptions are served by polling /deposits for every watched
address; de-duplication is left to the deposit monitor.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from services.blockchain_port import (
    BlockchainPort, DepositCallback, DepositEvent, MultisigResult, PayoutResult,
    TransactionState, WalletVerification,
)

logger = logging.getLogger(__name__)


class TronGatewayError(Exception):
    """Collaborator returned an error response"""

    def __init__(self, status: int, message: str):
        self.status = status
        super().__init__(f"HTTP {status}: {message}")


class TronGateway(BlockchainPort):
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        poll_interval: Optional[float] = None,
    ):
        self.base_url = (base_url or Config.TRON_GATEWAY_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else Config.TRON_GATEWAY_API_KEY
        self.poll_interval = poll_interval if poll_interval is not None else Config.DEPOSIT_POLL_INTERVAL
        self._session: Optional[aiohttp.ClientSession] = None
        self._subscriptions: Dict[str, DepositCallback] = {}
        self._poll_task: Optional[asyncio.Task] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"x-api-key": self.api_key} if self.api_key else {}
            timeout = aiohttp.ClientTimeout(total=Config.BLOCKCHAIN_CALL_TIMEOUT)
            self._session = aiohttp.ClientSession(headers=headers, timeout=timeout)
        return self._session

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        session = await self._get_session()
        async with session.request(method, f"{self.base_url}{path}", **kwargs) as response:
            if response.status >= 400:
                body = await response.text()
                raise TronGatewayError(response.status, body[:200])
            return await response.json()

    # ──────────────────────────────────────────────
    # BlockchainPort
    # ──────────────────────────────────────────────

    async def verify_wallet(self, address: str) -> WalletVerification:
        try:
            data = await self._request("POST", "/wallets/verify", json={"address": address})
        except (aiohttp.ClientError, asyncio.TimeoutError, TronGatewayError) as e:
            logger.warning(f"⚠️ TRON_VERIFY: {address} api error: {e}")
            return WalletVerification(valid=False, reason="api_error")
        return WalletVerification(valid=bool(data.get("valid")), reason=data.get("reason"))

    async def create_multisig(self, buyer_address: str, seller_address: str, service_address: str) -> MultisigResult:
        data = await self._request("POST", "/multisig", json={
            "buyer": buyer_address,
            "seller": seller_address,
            "service": service_address,
        })
        logger.info(f"🔐 TRON_MULTISIG: created {data['multisig_address']}")
        return MultisigResult(
            multisig_address=data["multisig_address"],
            activation_cost_trx=Decimal(str(data.get("activation_cost_trx", Config.MULTISIG_ACTIVATION_TRX))),
        )

    async def _payout(self, kind: str, multisig_address: str, to_address: str, amount: Decimal) -> PayoutResult:
        data = await self._request("POST", f"/payouts/{kind}", json={
            "multisig": multisig_address,
            "to": to_address,
            "amount": str(amount),
        })
        logger.info(f"💸 TRON_{kind.upper()}: {amount} from {multisig_address} -> {to_address} tx={data['tx_hash']}")
        return PayoutResult(
            tx_hash=data["tx_hash"],
            fee_trx=Decimal(str(data.get("fee_trx", "0"))),
            energy_method=data.get("energy_method", "none"),
            trx_returned=Decimal(str(data.get("trx_returned", "0"))),
            confirmed=bool(data.get("confirmed", False)),
        )

    async def release(self, multisig_address: str, to_address: str, amount: Decimal) -> PayoutResult:
        return await self._payout("release", multisig_address, to_address, amount)

    async def refund(self, multisig_address: str, to_address: str, amount: Decimal) -> PayoutResult:
        return await self._payout("refund", multisig_address, to_address, amount)

    async def get_transaction_status(self, tx_hash: str) -> TransactionState:
        data = await self._request("GET", f"/transactions/{tx_hash}")
        return TransactionState(data.get("state", TransactionState.PENDING.value))

    async def subscribe_deposits(self, address: str, callback: DepositCallback) -> None:
        self._subscriptions[address] = callback
        logger.info(f"👀 TRON_WATCH: {address} ({len(self._subscriptions)} watched)")

    async def unsubscribe_deposits(self, address: str) -> None:
        self._subscriptions.pop(address, None)

    # ──────────────────────────────────────────────
    # Deposit polling
    # ──────────────────────────────────────────────

    def start(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _poll_loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> int:
        delivered = 0
        for address, callback in list(self._subscriptions.items()):
            try:
                data = await self._request("GET", "/deposits", params={"address": address})
            except (aiohttp.ClientError, asyncio.TimeoutError, TronGatewayError) as e:
                logger.warning(f"⚠️ TRON_POLL: {address} failed: {e}")
                continue
            for item in data.get("deposits", []):
                event = DepositEvent(
                    address=address,
                    tx_hash=item["tx_hash"],
                    amount=Decimal(str(item["amount"])),
                    confirmations=int(item.get("confirmations", 0)),
                    from_address=item.get("from"),
                )
                try:
                    await callback(event)
                    delivered += 1
                except Exception as e:
                    # Redelivered on the next poll; the monitor is idempotent
                    logger.error(f"❌ TRON_POLL: deposit handler failed for {event.tx_hash}: {e}")
        return delivered
