from functools import lru_cache

from pydantic_settings import BaseSettings

from services.exceptions import ConfigurationError


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    # Storage
    DATABASE_URL: str = "postgresql+asyncpg://billing:billing@db:5432/billing"
    CREATE_SCHEMA: bool = False
    REDIS_URL: str | None = None
    STATUS_CACHE_TTL_SECONDS: int = 30

    # Razorpay
    RAZORPAY_KEY_ID: str | None = None
    RAZORPAY_KEY_SECRET: str | None = None
    RAZORPAY_WEBHOOK_SECRET: str | None = None
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com/v1"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Billing rules
    TRIAL_DAYS: int = 15
    DEFAULT_CURRENCY: str = "INR"
    MANDATE_AUTH_AMOUNT_PAISE: int = 200  # ₹2
    PAYMENT_REQUIRED_STATUS_CODE: int = 402
    ALLOW_UNREGISTERED_IDENTITY: bool = True
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 3600

    # Routes reachable regardless of subscription state
    BILLING_ALLOW_PREFIXES: list[str] = [
        "/health",
        "/config",
        "/auth",
        "/docs",
        "/openapi.json",
        "/api/payment",
        "/api/webhooks",
        "/api/admin",
    ]
    # Routes reachable in billing-only mode
    BILLING_ONLY_PREFIXES: list[str] = [
        "/api/payment",
        "/api/subscription",
        "/api/accounts",
        "/dashboard/billing",
    ]

    # Identity
    FIREBASE_PROJECT_ID: str | None = None
    ADMIN_API_TOKEN: str | None = None

    class Config:
        env_file = ".env"
        extra = "allow"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def gateway_configured(self) -> bool:
        return bool(self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET)


def validate_billing_config(config: Settings) -> None:
    """
    Refuse to run without credentials in production.

    Outside production a missing gateway only disables the payment
    endpoints; trials, status checks and the access gate keep working.
    """
    if not config.is_production:
        return

    missing = []
    if not config.RAZORPAY_KEY_ID:
        missing.append("RAZORPAY_KEY_ID")
    if not config.RAZORPAY_KEY_SECRET:
        missing.append("RAZORPAY_KEY_SECRET")
    if not config.RAZORPAY_WEBHOOK_SECRET:
        missing.append("RAZORPAY_WEBHOOK_SECRET")
    if not config.DATABASE_URL:
        missing.append("DATABASE_URL")
    if missing:
        raise ConfigurationError(
            "Billing cannot start without: " + ", ".join(missing)
        )


settings = Settings()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return settings
