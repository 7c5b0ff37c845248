# ==================================================================================
# core/config.py: FastAPI Configuration (Stripe + SendGrid + Pydantic v2)
# ==================================================================================
import logging
from functools import lru_cache

from pydantic import EmailStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # ------------------------
    # DATABASE CONFIG
    # ------------------------
    DATABASE_URL: str = "sqlite:///./captionflow.db"

    # ------------------------
    # SECURITY CONFIG
    # ------------------------
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    # ------------------------
    # SENDGRID EMAIL CONFIG
    # ------------------------
    SENDGRID_API_KEY: str | None = None
    MAIL_FROM: EmailStr | None = None

    # ------------------------
    # FRONTEND CONFIG
    # ------------------------
    FRONTEND_URL: str = "http://localhost:5173"

    # ------------------------
    # STRIPE / PAYMENT CONFIG
    # ------------------------
    STRIPE_SECRET_KEY: str
    STRIPE_WEBHOOK_SECRET: str
    STRIPE_PRICE_ID_MONTHLY: str
    STRIPE_PRICE_ID_YEARLY: str | None = None
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_WEBHOOK_TOLERANCE: int = 300

    # Shown on the pricing page when Stripe cannot be reached
    PREMIUM_PRICE_FALLBACK: float = 9.99
    PREMIUM_CURRENCY_FALLBACK: str = "USD"

    @property
    def STRIPE_SUCCESS_URL(self) -> str:
        """Stripe replaces {CHECKOUT_SESSION_ID} before redirecting back."""
        return f"{self.FRONTEND_URL}/pricing?session_id={{CHECKOUT_SESSION_ID}}&success=true"

    @property
    def STRIPE_CANCEL_URL(self) -> str:
        return f"{self.FRONTEND_URL}/pricing?canceled=true"

    # ------------------------
    # QUOTA / RATE LIMIT CONFIG
    # ------------------------
    QUOTA_FAIL_OPEN: bool = False
    GUEST_RATE_LIMIT: int = 5
    USER_RATE_LIMIT: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 3600
    RATE_LIMIT_SWEEP_SECONDS: int = 3600
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 3600

    # ------------------------
    # ENVIRONMENT SETTINGS
    # ------------------------
    ENVIRONMENT: str = "development"  # 'development' | 'production' | 'test'
    LOG_LEVEL: str = "INFO"

    @property
    def IS_PRODUCTION(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Load settings once per process; fail loudly on missing configuration."""
    try:
        settings = Settings()
    except ValidationError as e:
        logger.error("❌ Environment configuration error, missing or invalid settings:\n%s", e)
        raise
    logger.info("✅ Environment loaded (environment=%s)", settings.ENVIRONMENT)
    return settings
