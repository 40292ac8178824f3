"""
Event bus and notification delivery tests
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import BadRequest, Forbidden

from fixtures import RecordingNotifier
from services.event_bus import DomainEvents, EventBus
from services.notification_service import (
    LoggingNotifier, NotificationKind, NotificationService, TelegramNotifier,
)


class TestEventBus:
    @pytest.mark.asyncio
    async def test_handlers_run_in_order(self):
        bus = EventBus()
        seen = []

        async def first(data):
            seen.append(("first", data["deal_id"]))

        def second(data):
            seen.append(("second", data["deal_id"]))

        bus.subscribe(DomainEvents.DEAL_TERMINATED, first)
        bus.subscribe(DomainEvents.DEAL_TERMINATED, second)
        await bus.emit(DomainEvents.DEAL_TERMINATED, {"deal_id": "D-1"})
        assert seen == [("first", "D-1"), ("second", "D-1")]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        calls = []

        async def broken(data):
            raise RuntimeError("ledger offline")

        async def healthy(data):
            calls.append(data)

        bus.subscribe(DomainEvents.DEAL_CREATED, broken)
        bus.subscribe(DomainEvents.DEAL_CREATED, healthy)
        await bus.emit(DomainEvents.DEAL_CREATED, {"deal_id": "D-2"})
        assert calls == [{"deal_id": "D-2"}]

    @pytest.mark.asyncio
    async def test_unsubscribe_and_clear(self):
        bus = EventBus()
        handler = AsyncMock()
        bus.subscribe(DomainEvents.DEAL_CREATED, handler)
        bus.unsubscribe(DomainEvents.DEAL_CREATED, handler)
        await bus.emit(DomainEvents.DEAL_CREATED, {})
        handler.assert_not_awaited()

        bus.subscribe(DomainEvents.DEAL_CREATED, handler)
        bus.clear()
        await bus.emit(DomainEvents.DEAL_CREATED, {})
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_terminal_transition_emits_event(self, core, driver):
        received = []

        async def capture(data):
            received.append(data)

        core.event_bus.subscribe(DomainEvents.DEAL_TERMINATED, capture)
        deal = await driver.create()
        await core.engine.cancel(deal.deal_id, deal.buyer_id)
        assert received == [{"deal_id": deal.deal_id, "status": "cancelled", "platform_code": None}]


class TestNotificationService:
    @pytest.mark.asyncio
    async def test_send_is_fire_and_forget(self):
        port = RecordingNotifier()
        service = NotificationService(port)
        service.send_many([1, 2], NotificationKind.EXPIRED, {"deal_id": "D-1"})
        assert service.pending == 2
        await service.drain()
        assert service.pending == 0
        assert [user_id for user_id, _, _ in port.sent] == [1, 2]

    @pytest.mark.asyncio
    async def test_delivery_failure_is_swallowed(self, caplog):
        port = RecordingNotifier(fail_for={1})
        service = NotificationService(port)
        service.send_many([1, 2], NotificationKind.CANCELLED, {"deal_id": "D-1"})
        await service.drain()
        assert port.kinds_for(2) == [NotificationKind.CANCELLED]
        assert "NOTIFY_FAILED" in caplog.text

    @pytest.mark.asyncio
    async def test_transition_survives_notifier_outage(self, core, driver, notifier_port):
        notifier_port.fail_for.update({1001, 2002})
        deal = await driver.create()
        deal = await core.engine.cancel(deal.deal_id, deal.seller_id)
        await core.notifier.drain()
        assert deal.status == "cancelled"
        assert notifier_port.sent == []


class TestTelegramNotifier:
    def test_render_fills_template(self):
        text = TelegramNotifier.render(NotificationKind.AWAITING_DEPOSIT, {
            "deal_id": "D-7", "amount": "500", "asset": "USDT", "multisig_address": "TMulti",
        })
        assert "D-7" in text
        assert "<code>TMulti</code>" in text

    def test_render_tolerates_missing_fields(self):
        text = TelegramNotifier.render(NotificationKind.COMPLETED, {"deal_id": "D-7", "asset": None})
        assert text.startswith("✅ Deal D-7 completed.")
        assert "- - released" in text

    def test_render_escapes_user_text(self):
        text = TelegramNotifier.render(NotificationKind.DEAL_CREATED, {
            "deal_id": "D-1", "product_name": "Logo <v2> & icons", "amount": "100", "asset": "USDT",
        })
        assert text == "🤝 <b>Deal D-1</b> created: Logo &lt;v2&gt; &amp; icons for 100 USDT."

        text = TelegramNotifier.render(NotificationKind.USER_BANNED, {"reason": "<b>spam</b>"})
        assert "&lt;b&gt;spam&lt;/b&gt;" in text

    @pytest.mark.asyncio
    async def test_deliver_sends_html(self):
        bot = MagicMock()
        bot.send_message = AsyncMock()
        await TelegramNotifier(bot).deliver(1001, NotificationKind.EXPIRED, {"deal_id": "D-3"})
        bot.send_message.assert_awaited_once_with(chat_id=1001, text="⌛ Deal D-3 expired.", parse_mode="HTML")

    @pytest.mark.asyncio
    async def test_blocked_user_is_flagged(self):
        bot = MagicMock()
        bot.send_message = AsyncMock(side_effect=Forbidden("Forbidden: bot was blocked by the user"))
        on_blocked = AsyncMock()
        await TelegramNotifier(bot, on_blocked=on_blocked).deliver(1001, NotificationKind.EXPIRED, {"deal_id": "D-3"})
        on_blocked.assert_awaited_once_with(1001)

    @pytest.mark.asyncio
    async def test_other_telegram_errors_are_logged(self):
        bot = MagicMock()
        bot.send_message = AsyncMock(side_effect=BadRequest("Chat not found"))
        on_blocked = AsyncMock()
        await TelegramNotifier(bot, on_blocked=on_blocked).deliver(1001, NotificationKind.EXPIRED, {"deal_id": "D-3"})
        on_blocked.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_logging_notifier(self, caplog):
        with caplog.at_level("INFO"):
            await LoggingNotifier().deliver(5, NotificationKind.USER_BANNED, {"reason": "spam"})
        assert "restricted: spam" in caplog.text
