#!/usr/bin/env python3
"""
KeyShield Deal Lifecycle Core - process entrypoint

Deterministic startup:
1. database connection and schema
2. blockchain gateway and notification channel
3. DLC container (engine, monitors, ledger, services)
4. deposit re-subscription and background scheduler

Runs until SIGINT/SIGTERM, then shuts down in reverse order.
"""

import asyncio
import logging
import signal
import sys

from telegram import Bot

from config import Config
from database import AsyncSessionLocal, create_tables, dispose_engine, managed_session, test_connection
from jobs.scheduler import DealScheduler
from services.dlc_container import build_container
from services.notification_service import LoggingNotifier, TelegramNotifier
from services.tron_gateway import TronGateway
from services.user_repository import UserRepository

# Setup logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def _mark_bot_blocked(telegram_id: int) -> None:
    async with managed_session(AsyncSessionLocal) as session:
        await UserRepository().mark_bot_blocked(session, telegram_id)


def build_notifier():
    if Config.BOT_TOKEN:
        return TelegramNotifier(Bot(token=Config.BOT_TOKEN), on_blocked=_mark_bot_blocked)
    logger.warning("⚠️ BOT_TOKEN not set - notifications go to the log only")
    return LoggingNotifier()


async def main() -> int:
    Config.log_configuration()

    logger.info("🗄️ Initializing database...")
    if not await test_connection():
        logger.error("❌ Startup failed - database unreachable")
        return 1
    if not await create_tables():
        logger.error("❌ Startup failed - schema could not be created")
        return 1

    gateway = TronGateway()
    core = build_container(AsyncSessionLocal, gateway, build_notifier())
    scheduler = DealScheduler(core)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        gateway.start()
        await core.deposit_monitor.start()
        await core.prices.refresh_price()
        scheduler.start()
        logger.info("🎉 KeyShield DLC startup complete")
        await stop_event.wait()
    finally:
        logger.info("🛑 Shutting down...")
        scheduler.shutdown()
        await gateway.stop()
        await core.shutdown()
        await dispose_engine()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("👋 Stopped by user")
