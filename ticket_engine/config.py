from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ---- DB ----
    DATABASE_URL: str = "sqlite:///./ticketing.db"
    DB_ECHO: bool = False

    # ---- Redis (rate limit + idempotency cache) ----
    REDIS_URL: str = "redis://localhost:6379/0"

    # ---- Secrets ----
    TICKET_SIGNING_SECRET: str = "dev_secret_change_me"
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = "whsec_test_secret"
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    # ---- Checkout ----
    HOLD_TTL_MINUTES: int = 10
    MAX_HOLD_QUANTITY: int = 10
    PLATFORM_FEE_RATE: Decimal = Decimal("0")
    DEFAULT_CURRENCY: str = "USD"

    # ---- Transfers ----
    TRANSFER_TTL_HOURS: int = 24

    # ---- Worker ----
    SWEEP_INTERVAL_SECONDS: float = 30.0

    # ---- Gate ----
    SCAN_RATE_LIMIT_PER_MINUTE: int = 10
    IDEMPOTENCY_TTL_SECONDS: int = 300

    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
