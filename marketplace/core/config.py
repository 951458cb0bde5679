from decimal import Decimal
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "Marketplace Checkout API"
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = "changeme"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 8

    ADMIN_SECRET_KEY: str = "change-this-admin-secret"

    # Database
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "marketplace_db"
    POSTGRES_PORT: int = 5432
    DATABASE_URL: str = ""

    # Slot ledger / checkout timing
    SLOT_LOCK_MINUTES: int = 15
    ABANDONED_ORDER_MINUTES: int = 15
    SWEEP_INTERVAL_SECONDS: int = 60
    DEFAULT_SLOT_DURATION_MINUTES: int = 60
    DEFAULT_SLOT_INTERVAL_MINUTES: int = 30

    # Pickup QR codes
    QR_SECRET: str = "change-this-qr-secret"
    QR_MAX_AGE_DAYS: int = 30

    # Money
    PLATFORM_COMMISSION_RATE: Decimal = Decimal("0.10")
    CASHBACK_RATE: Decimal = Decimal("0.01")
    BASE_CURRENCY: str = "GBP"
    PAYOUT_CURRENCIES: List[str] = ["GBP", "USD", "EUR"]
    FX_USD_TO_BASE: Decimal = Decimal("0.79")
    FX_EUR_TO_BASE: Decimal = Decimal("0.86")
    DEFAULT_SELLER_COUNTRY: str = "GB"

    # Payment processor
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    BACKEND_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:5173"

    # Guards POST /orders/cleanup-abandoned when set
    CLEANUP_API_KEY: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    def assemble_db_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    def fx_rate(self, currency: str) -> Decimal:
        """Rate converting one unit of `currency` into the base currency."""
        currency = currency.upper()
        if currency == self.BASE_CURRENCY.upper():
            return Decimal("1")
        rates = {"USD": self.FX_USD_TO_BASE, "EUR": self.FX_EUR_TO_BASE}
        return rates.get(currency, Decimal("1"))


settings = Settings()
settings.DATABASE_URL = settings.assemble_db_url()
