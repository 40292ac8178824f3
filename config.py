"""Configuration management for the KeyShield deal lifecycle core"""

import os
import logging
from decimal import Decimal
from typing import Set

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _parse_id_list(raw: str) -> Set[int]:
    """Parse a comma-separated list of Telegram IDs, skipping junk entries"""
    ids = set()
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            ids.add(int(chunk))
        except ValueError:
            logger.warning(f"⚠️ Ignoring invalid Telegram ID in admin list: {chunk!r}")
    return ids


class Config:
    """Application configuration"""

    # Environment
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    # postgresql:// URLs are rewritten to the asyncpg driver in database.py
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./keyshield.db")

    # Telegram side-channel
    BOT_TOKEN = os.getenv("BOT_TOKEN", os.getenv("TELEGRAM_BOT_TOKEN"))

    # Deal limits (USDT)
    MIN_DEAL_AMOUNT = Decimal(os.getenv("MIN_DEAL_AMOUNT", "50"))
    COMMISSION_RATE = Decimal(os.getenv("COMMISSION_RATE", "0.05"))  # 5% above threshold
    MIN_COMMISSION = Decimal(os.getenv("MIN_COMMISSION", "15"))  # flat fee up to threshold
    COMMISSION_THRESHOLD = Decimal(os.getenv("COMMISSION_THRESHOLD", "300"))

    # Deadlines (hours)
    MIN_DEADLINE_HOURS = int(os.getenv("MIN_DEADLINE_HOURS", "24"))
    MAX_DEADLINE_HOURS = int(os.getenv("MAX_DEADLINE_HOURS", "720"))
    AUTO_RELEASE_WINDOW_HOURS = int(os.getenv("AUTO_RELEASE_WINDOW_HOURS", "72"))

    # Disputes
    AUTO_BAN_LOSS_STREAK = int(os.getenv("AUTO_BAN_LOSS_STREAK", "3"))
    MAX_DISPUTE_COMMENTS = int(os.getenv("MAX_DISPUTE_COMMENTS", "100"))

    # Users
    MAX_SAVED_WALLETS = int(os.getenv("MAX_SAVED_WALLETS", "5"))
    SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "24"))

    # Background jobs (seconds)
    DEADLINE_CHECK_INTERVAL = int(os.getenv("DEADLINE_CHECK_INTERVAL", "60"))
    PRICE_REFRESH_INTERVAL = int(os.getenv("PRICE_REFRESH_INTERVAL", "300"))
    PAYOUT_RETRY_INTERVAL = int(os.getenv("PAYOUT_RETRY_INTERVAL", "60"))
    DEPOSIT_POLL_INTERVAL = int(os.getenv("DEPOSIT_POLL_INTERVAL", "30"))

    # Blockchain collaborator
    BLOCKCHAIN_CALL_TIMEOUT = float(os.getenv("BLOCKCHAIN_CALL_TIMEOUT", "30"))
    TRON_GATEWAY_URL = os.getenv("TRON_GATEWAY_URL", "http://localhost:8090")
    TRON_GATEWAY_API_KEY = os.getenv("TRON_GATEWAY_API_KEY", "")
    SERVICE_WALLET_ADDRESS = os.getenv("SERVICE_WALLET_ADDRESS", "")

    # Payout retry queue: 60s * 2^n capped at 6h, 10 attempts stays under 24h
    PAYOUT_MAX_ATTEMPTS = int(os.getenv("PAYOUT_MAX_ATTEMPTS", "10"))
    PAYOUT_RETRY_BASE_DELAY = int(os.getenv("PAYOUT_RETRY_BASE_DELAY", "60"))
    PAYOUT_RETRY_MAX_DELAY = int(os.getenv("PAYOUT_RETRY_MAX_DELAY", str(6 * 3600)))

    # Operational costs (TRX)
    MULTISIG_ACTIVATION_TRX = Decimal(os.getenv("MULTISIG_ACTIVATION_TRX", "5"))
    FALLBACK_TRX_AMOUNT = Decimal(os.getenv("FALLBACK_TRX_AMOUNT", "30"))
    TRX_TX_FEE = Decimal(os.getenv("TRX_TX_FEE", "1.1"))

    # TRX price oracle
    COINGECKO_API_URL = os.getenv(
        "COINGECKO_API_URL",
        "https://api.coingecko.com/api/v3/simple/price?ids=tron&vs_currencies=usd",
    )
    TRX_FALLBACK_PRICE = Decimal(os.getenv("TRX_FALLBACK_PRICE", "0.28"))
    PRICE_CACHE_SECONDS = int(os.getenv("PRICE_CACHE_SECONDS", "300"))

    # Roles
    ADMIN_IDS = _parse_id_list(os.getenv("ADMIN_IDS", ""))
    SUPERADMIN_IDS = _parse_id_list(os.getenv("SUPERADMIN_IDS", ""))

    # In-process memory caps
    LOCK_REGISTRY_MAX_KEYS = int(os.getenv("LOCK_REGISTRY_MAX_KEYS", "10000"))
    DEPOSIT_DEDUP_CAPACITY = int(os.getenv("DEPOSIT_DEDUP_CAPACITY", "10000"))

    @classmethod
    def is_admin(cls, telegram_id: int) -> bool:
        return telegram_id in cls.ADMIN_IDS or telegram_id in cls.SUPERADMIN_IDS

    @classmethod
    def is_superadmin(cls, telegram_id: int) -> bool:
        return telegram_id in cls.SUPERADMIN_IDS

    @staticmethod
    def log_configuration():
        """Log current configuration for debugging (secrets redacted)"""
        db_scheme = Config.DATABASE_URL.split("://", 1)[0]
        logger.info("🔧 KeyShield Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {db_scheme}://***")
        logger.info(f"   Bot token: {'configured' if Config.BOT_TOKEN else 'MISSING'}")
        logger.info(
            f"   Commission: {Config.MIN_COMMISSION} USDT flat up to {Config.COMMISSION_THRESHOLD}, "
            f"{Config.COMMISSION_RATE * 100}% above"
        )
        logger.info(
            f"   Deadlines: {Config.MIN_DEADLINE_HOURS}-{Config.MAX_DEADLINE_HOURS}h, "
            f"auto-release after {Config.AUTO_RELEASE_WINDOW_HOURS}h"
        )
        logger.info(f"   Admins: {len(Config.ADMIN_IDS)} | Superadmins: {len(Config.SUPERADMIN_IDS)}")
        if not Config.SERVICE_WALLET_ADDRESS:
            logger.warning("⚠️ SERVICE_WALLET_ADDRESS not configured - multisig creation will fail")
