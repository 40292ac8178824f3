"""
Decoupled Notification Service for deal participants
Fire-and-forget Telegram messages; the lifecycle core never awaits delivery
"""

import asyncio
import html
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from telegram import Bot
from telegram.error import Forbidden, TelegramError

logger = logging.getLogger(__name__)


class NotificationKind(Enum):
    DEAL_CREATED = "deal_created"
    AWAITING_DEPOSIT = "awaiting_deposit"
    DEPOSIT_RECEIVED = "deposit_received"
    DEPOSIT_INSUFFICIENT = "deposit_insufficient"
    WORK_SUBMITTED = "work_submitted"
    COMPLETED = "completed"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"
    DISPUTE_CANCELLED = "dispute_cancelled"
    DEADLINE_WARNING = "deadline_warning"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    USER_BANNED = "user_banned"


class NotificationPort(ABC):
    """Delivery channel for user-facing notifications"""

    @abstractmethod
    async def deliver(self, user_id: int, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        ...


class NotificationService:
    """
    Schedules deliveries as background tasks and returns immediately.
    Delivery is best-effort: failures are logged, never raised or retried here.
    """

    def __init__(self, port: NotificationPort):
        self.port = port
        self._tasks: Set[asyncio.Task] = set()

    def send(self, user_id: int, kind: NotificationKind, payload: Optional[Dict[str, Any]] = None) -> None:
        task = asyncio.create_task(self._deliver(user_id, kind, payload or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def send_many(self, user_ids, kind: NotificationKind, payload: Optional[Dict[str, Any]] = None) -> None:
        for user_id in user_ids:
            self.send(user_id, kind, payload)

    async def _deliver(self, user_id: int, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        try:
            await self.port.deliver(user_id, kind, payload)
        except Exception as e:
            logger.warning(f"⚠️ NOTIFY_FAILED: {kind.value} to {user_id}: {type(e).__name__}: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)"""
        while self._tasks:
            tasks = list(self._tasks)
            await asyncio.gather(*tasks, return_exceptions=True)
            self._tasks.difference_update(tasks)


_TEMPLATES = {
    NotificationKind.DEAL_CREATED: "🤝 <b>Deal {deal_id}</b> created: {product_name} for {amount} {asset}.",
    NotificationKind.AWAITING_DEPOSIT: "🔐 Deal {deal_id}: escrow address ready. Deposit {amount} {asset} to <code>{multisig_address}</code>.",
    NotificationKind.DEPOSIT_RECEIVED: "💰 Deal {deal_id}: deposit of {deposit_amount} {asset} received. Funds are locked.",
    NotificationKind.DEPOSIT_INSUFFICIENT: "⚠️ Deal {deal_id}: deposit of {received} is below the deal amount {expected}.",
    NotificationKind.WORK_SUBMITTED: "📦 Deal {deal_id}: the seller submitted the work. Please review and confirm.",
    NotificationKind.COMPLETED: "✅ Deal {deal_id} completed. {released_amount} {asset} released to the seller.",
    NotificationKind.DISPUTE_OPENED: "⚖️ Deal {deal_id}: a dispute was opened. An arbiter will review it.",
    NotificationKind.DISPUTE_RESOLVED: "⚖️ Deal {deal_id}: dispute resolved ({decision}).",
    NotificationKind.DISPUTE_CANCELLED: "↩️ Deal {deal_id}: dispute cancelled, new deadline {deadline}.",
    NotificationKind.DEADLINE_WARNING: "⏰ Deal {deal_id}: the deadline has passed.",
    NotificationKind.CANCELLED: "❌ Deal {deal_id} was cancelled.",
    NotificationKind.EXPIRED: "⌛ Deal {deal_id} expired.",
    NotificationKind.USER_BANNED: "🚫 Your account has been restricted: {reason}.",
}


class _SafeDict(dict):
    def __missing__(self, key):
        return "-"


class TelegramNotifier(NotificationPort):
    """python-telegram-bot delivery; users who blocked the bot are flagged through the callback"""

    def __init__(self, bot: Bot, on_blocked: Optional[Callable[[int], Awaitable[None]]] = None):
        self.bot = bot
        self.on_blocked = on_blocked

    @staticmethod
    def render(kind: NotificationKind, payload: Dict[str, Any]) -> str:
        template = _TEMPLATES.get(kind, "{kind}: {deal_id}")
        # Messages go out with parse_mode HTML; user text must not open tags
        values = {k: html.escape(str(v)) for k, v in payload.items() if v is not None}
        return template.format_map(_SafeDict(kind=kind.value, **values))

    async def deliver(self, user_id: int, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        text = self.render(kind, payload)
        try:
            await self.bot.send_message(chat_id=user_id, text=text, parse_mode='HTML')
        except Forbidden:
            logger.info(f"🔕 NOTIFY: user {user_id} blocked the bot")
            if self.on_blocked is not None:
                await self.on_blocked(user_id)
        except TelegramError as e:
            logger.warning(f"⚠️ NOTIFY: Telegram error for {user_id}: {e}")


class LoggingNotifier(NotificationPort):
    """Writes notifications to the log; used when no bot token is configured"""

    async def deliver(self, user_id: int, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        logger.info(f"📨 NOTIFY[{kind.value}] -> {user_id}: {TelegramNotifier.render(kind, payload)}")
