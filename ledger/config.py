"""
Runtime configuration for the coin ledger and rewards engine.

Every tunable is an environment variable with the ``REWARDS_`` prefix,
e.g. ``REWARDS_DAILY_LIMIT=250``. A ``.env`` file next to the working
directory is read when present.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Read qualification
    MIN_READ_DURATION: int = 30  # seconds
    MIN_READ_PERCENTAGE: int = 40  # %

    # Earning
    BASE_EARNING: int = 1
    DAILY_LIMIT: int = 500
    PER_CONTENT_LIMIT: int = 10000
    EARNING_STOP_THRESHOLD: int = 50
    EARNING_TIMEZONE: str = "Europe/Istanbul"
    MILESTONES: List[int] = Field(default_factory=lambda: [1000, 10000, 100000, 1000000, 10000000])

    # Commission pools, keyed by promo program
    TOTAL_ALLOCATION: Dict[str, int] = Field(
        default_factory=lambda: {"affiliate": 40, "admin_coupon": 35}
    )
    MIN_AFFILIATE_DISCOUNT: int = 5
    MAX_AFFILIATE_DISCOUNT: int = 20
    MAX_AFFILIATE_PROMOS: int = 5

    # Payouts
    MIN_PAYOUT: Decimal = Decimal("100")
    AUTO_PAYOUT_INTERVAL_DAYS: int = 7
    COIN_MIN_WITHDRAWAL: int = 500
    COIN_TO_CASH_RATE: Decimal = Decimal("0.10")
    COIN_WITHDRAWAL_FEE_RATE: Decimal = Decimal("0.20")
    WITHDRAWAL_PLANS: List[str] = Field(default_factory=lambda: ["pro", "max", "business"])

    # Subscriptions
    PLAN_PRICES: Dict[str, Decimal] = Field(
        default_factory=lambda: {
            "basic": Decimal("39.99"),
            "pro": Decimal("79.99"),
            "max": Decimal("129"),
            "business": Decimal("249"),
        }
    )
    PLAN_PERIOD_DAYS: int = 30

    # Store / collaborators
    CAS_RETRIES: int = 1
    PAYMENT_TIMEOUT_SECONDS: float = 10.0

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="REWARDS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
