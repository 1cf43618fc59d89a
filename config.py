"""Configuration management for the freight ledger core"""

import os
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./freight_ledger.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO", False)
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "7"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "15"))
    DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    # Upper bound for waiting on an account row lock (PostgreSQL lock_timeout)
    DB_LOCK_TIMEOUT_SECONDS = int(os.getenv("DB_LOCK_TIMEOUT_SECONDS", "10"))

    # Money handling
    MONEY_PRECISION = Decimal(os.getenv("MONEY_PRECISION", "0.01"))
    PERCENT_PRECISION = Decimal("0.01")

    # Platform setting defaults (rows in platform_settings override these)
    DEFAULT_GLOBAL_COMMISSION_PERCENT = Decimal(
        os.getenv("DEFAULT_GLOBAL_COMMISSION_PERCENT", "5.0")
    )
    DEFAULT_COMMISSION_ENABLED = _env_bool("DEFAULT_COMMISSION_ENABLED", True)
    DEFAULT_AUTO_TRIAL_ENABLED = _env_bool("DEFAULT_AUTO_TRIAL_ENABLED", True)
    DEFAULT_TRIAL_SUBSCRIPTION_ID = os.getenv("DEFAULT_TRIAL_SUBSCRIPTION_ID") or None
    DEFAULT_TRIAL_DAYS = int(os.getenv("DEFAULT_TRIAL_DAYS", "7"))
    DEFAULT_FAST_WITHDRAW_COMMISSION = Decimal(
        os.getenv("DEFAULT_FAST_WITHDRAW_COMMISSION", "2.0")
    )
    DEFAULT_MIN_WITHDRAW_AMOUNT = Decimal(os.getenv("DEFAULT_MIN_WITHDRAW_AMOUNT", "10.00"))
    DEFAULT_MAX_WITHDRAW_AMOUNT = Decimal(os.getenv("DEFAULT_MAX_WITHDRAW_AMOUNT", "10000.00"))

    # Commission levels are derived from carrier turnover over this window
    TURNOVER_WINDOW_DAYS = int(os.getenv("TURNOVER_WINDOW_DAYS", "30"))

    # Background jobs
    COMMISSION_LEVEL_REFRESH_INTERVAL_MINUTES = int(
        os.getenv("COMMISSION_LEVEL_REFRESH_INTERVAL_MINUTES", "60")
    )
    LEDGER_CONSISTENCY_INTERVAL_MINUTES = int(
        os.getenv("LEDGER_CONSISTENCY_INTERVAL_MINUTES", "30")
    )

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info(f"🔧 Ledger Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")
        # Never log credentials embedded in the URL
        database_backend = Config.DATABASE_URL.split(":", 1)[0]
        logger.info(f"   Database backend: {database_backend}")
        logger.info(f"   Money precision: {Config.MONEY_PRECISION}")
        logger.info(f"   Default global commission: {Config.DEFAULT_GLOBAL_COMMISSION_PERCENT}%")
        logger.info(f"   Turnover window: {Config.TURNOVER_WINDOW_DAYS} days")


def configure_logging(level: str = None):
    """Configure root logging once for processes embedding the ledger"""
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
