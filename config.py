"""Configuration management for the P2P settlement sync services"""

import os
import logging
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _parse_rates(raw: str) -> Dict[str, float]:
    """Parse 'PAIR=rate,PAIR=rate' into a dict"""
    rates: Dict[str, float] = {}
    for item in raw.split(","):
        if "=" not in item:
            continue
        pair, value = item.split("=", 1)
        try:
            rates[pair.strip().upper()] = float(value)
        except ValueError:
            logger.warning(f"⚠️ Ignoring malformed reference rate: {item!r}")
    return rates


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database (asyncpg in production, any SQLAlchemy async URL works)
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "5"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "10"))

    # Collaborator endpoints
    ORDERS_API_BASE_URL = os.getenv("ORDERS_API_BASE_URL", "http://localhost:3000/api")
    ORDERS_API_TIMEOUT_SECONDS = float(os.getenv("ORDERS_API_TIMEOUT_SECONDS", "10"))
    ESCROW_SERVICE_URL = os.getenv("ESCROW_SERVICE_URL", "http://localhost:4000")
    ESCROW_SERVICE_TIMEOUT_SECONDS = float(os.getenv("ESCROW_SERVICE_TIMEOUT_SECONDS", "30"))
    FALLBACK_SOCKET_URL = os.getenv("FALLBACK_SOCKET_URL", "ws://localhost:4010/ws/orders")
    FALLBACK_SOCKET_HOST = os.getenv("FALLBACK_SOCKET_HOST", "0.0.0.0")
    FALLBACK_SOCKET_PORT = int(os.getenv("FALLBACK_SOCKET_PORT", "4010"))
    FALLBACK_SOCKET_HEARTBEAT_SECONDS = float(os.getenv("FALLBACK_SOCKET_HEARTBEAT_SECONDS", "30"))

    # Telegram mirror of order status updates
    BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN") or os.getenv("BOT_TOKEN")

    # Realtime sync pipeline
    BATCH_WINDOW_MS = int(os.getenv("BATCH_WINDOW_MS", "100"))
    DEDUP_WINDOW_SECONDS = float(os.getenv("DEDUP_WINDOW_SECONDS", "3"))
    DEDUP_EVICT_AFTER_SECONDS = float(os.getenv("DEDUP_EVICT_AFTER_SECONDS", "10"))
    DEDUP_MAX_ENTRIES = int(os.getenv("DEDUP_MAX_ENTRIES", "100"))

    # Fallback socket reconnect policy
    SOCKET_RECONNECT_BASE_MS = int(os.getenv("SOCKET_RECONNECT_BASE_MS", "1000"))
    SOCKET_RECONNECT_MAX_MS = int(os.getenv("SOCKET_RECONNECT_MAX_MS", "16000"))
    SOCKET_MAX_RECONNECT_ATTEMPTS = int(os.getenv("SOCKET_MAX_RECONNECT_ATTEMPTS", "5"))

    # Worker cadence
    AUTO_BUMP_POLL_SECONDS = int(os.getenv("AUTO_BUMP_POLL_SECONDS", "10"))
    EXPIRY_POLL_SECONDS = int(os.getenv("EXPIRY_POLL_SECONDS", "10"))
    EXPIRY_BATCH_SIZE = int(os.getenv("EXPIRY_BATCH_SIZE", "20"))
    EXPIRY_MAX_BACKOFF_SECONDS = int(os.getenv("EXPIRY_MAX_BACKOFF_SECONDS", "60"))
    # Optional JSON heartbeat written after every expiry batch (empty disables it)
    EXPIRY_HEARTBEAT_PATH = os.getenv("EXPIRY_HEARTBEAT_PATH", "")

    # Priority auction defaults
    DEFAULT_BUMP_STEP_BPS = int(os.getenv("DEFAULT_BUMP_STEP_BPS", "10"))
    DEFAULT_MAX_PREMIUM_BPS = int(os.getenv("DEFAULT_MAX_PREMIUM_BPS", "500"))
    DEFAULT_BUMP_INTERVAL_SEC = int(os.getenv("DEFAULT_BUMP_INTERVAL_SEC", "30"))
    REFERENCE_RATES: Dict[str, float] = _parse_rates(os.getenv("REFERENCE_RATES", "USDT_AED=3.67"))
    DEFAULT_CORRIDOR = os.getenv("DEFAULT_CORRIDOR", "USDT_AED")

    # Order timing
    ORDER_TIMEOUT_MINUTES = int(os.getenv("ORDER_TIMEOUT_MINUTES", "15"))
    DISPUTE_TIMEOUT_MINUTES = int(os.getenv("DISPUTE_TIMEOUT_MINUTES", "4320"))
    MAX_ORDER_EXTENSIONS = int(os.getenv("MAX_ORDER_EXTENSIONS", "3"))

    @staticmethod
    def reference_rate(corridor: str = None) -> float:
        """Reference exchange rate for a corridor (falls back to the default corridor)"""
        key = (corridor or Config.DEFAULT_CORRIDOR).upper()
        if key in Config.REFERENCE_RATES:
            return Config.REFERENCE_RATES[key]
        return Config.REFERENCE_RATES.get(Config.DEFAULT_CORRIDOR, 3.67)

    @staticmethod
    def setup_logging(level: str = None):
        """Configure root logging for worker and socket server processes"""
        logging.basicConfig(
            level=getattr(logging, (level or Config.LOG_LEVEL), logging.INFO),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        # aiohttp access logs are noisy at INFO
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
        logging.getLogger("apscheduler.executors.default").setLevel(logging.WARNING)

    @staticmethod
    def validate() -> List[str]:
        """Return a list of configuration problems (empty when valid)"""
        problems = []
        if not Config.DATABASE_URL:
            problems.append("DATABASE_URL is required for the worker and the order store")
        if Config.SOCKET_MAX_RECONNECT_ATTEMPTS < 0:
            problems.append("SOCKET_MAX_RECONNECT_ATTEMPTS must be >= 0")
        if Config.DEFAULT_BUMP_STEP_BPS <= 0:
            problems.append("DEFAULT_BUMP_STEP_BPS must be positive")
        if Config.DEFAULT_MAX_PREMIUM_BPS <= 0:
            problems.append("DEFAULT_MAX_PREMIUM_BPS must be positive")

        for problem in problems:
            logger.error(f"❌ CONFIG: {problem}")
        return problems

    @staticmethod
    def log_environment_config():
        """Log current configuration for debugging (secrets omitted)"""
        logger.info("🔧 Settlement Sync Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database configured: {bool(Config.DATABASE_URL)}")
        logger.info(f"   Orders API: {Config.ORDERS_API_BASE_URL}")
        logger.info(f"   Fallback socket: {Config.FALLBACK_SOCKET_URL}")
        logger.info(f"   Auto-bump poll: {Config.AUTO_BUMP_POLL_SECONDS}s, expiry poll: {Config.EXPIRY_POLL_SECONDS}s")
        logger.info(f"   Telegram mirror: {'enabled' if Config.BOT_TOKEN else 'disabled'}")
