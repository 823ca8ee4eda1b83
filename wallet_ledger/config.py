from enum import Enum
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    db_url: str = "sqlite:///./ledger.db"
    log_level: str = "INFO"

    gateway_base_url: AnyHttpUrl = "http://settlement-gateway:8001"
    gateway_hmac_secret: str = "change_secret"
    gateway_timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    rate_limit_per_minute: int = 60

    pending_expiry_hours: int = 24
    withdrawal_reconcile_after_minutes: int = 30

    # GSALT units (100 units = 1 GSALT)
    min_topup_amount: int = 1_000
    max_topup_amount: int = 5_000_000
    min_transfer_amount: int = 100
    max_transfer_amount: int = 2_500_000
    min_payment_amount: int = 100
    max_payment_amount: int = 1_000_000
    daily_transfer_limit: int = 10_000_000
    daily_payment_limit: int = 5_000_000

settings = Settings()

LEDGER_CURRENCY = "GSALT"

# 1 GSALT = 1000 IDR and 1 GSALT = 100 units
IDR_PER_GSALT = 1000
IDR_PER_GSALT_UNIT = 10
SETTLEMENT_CURRENCY = "IDR"
POINTS_CURRENCY = "PTS"

MAX_PAGE_SIZE = 100


class FundingSource(str, Enum):
    WALLET = "WALLET"
    EXTERNAL = "EXTERNAL"
