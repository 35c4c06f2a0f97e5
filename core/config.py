# ==================================================================================
# core/config.py: FastAPI Configuration (Stripe + SendGrid + Pydantic v2)
# ==================================================================================
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import ValidationError
import logging
import sys

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # ------------------------
    # DATABASE CONFIG
    # ------------------------
    DATABASE_URL: str = "sqlite:///./donorhub.db"

    # ------------------------
    # SECURITY CONFIG
    # ------------------------
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # ------------------------
    # SENDGRID EMAIL CONFIG
    # ------------------------
    SENDGRID_API_KEY: str | None = None
    MAIL_FROM: str | None = None  # Example: "DonorHub <billing@donorhub.org>"

    # ------------------------
    # FRONTEND CONFIG
    # ------------------------
    FRONTEND_URL: str = "http://localhost:3000"

    # ------------------------
    # STRIPE / PAYMENT CONFIG
    # ------------------------
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None

    @property
    def STRIPE_SUCCESS_URL(self) -> str:
        """Where Stripe Checkout sends the donor after a completed subscription."""
        return f"{self.FRONTEND_URL}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def STRIPE_CANCEL_URL(self) -> str:
        return f"{self.FRONTEND_URL}/subscription/cancel"

    # ------------------------
    # ENVIRONMENT SETTINGS
    # ------------------------
    ENVIRONMENT: str = "development"  # 'development' | 'production'
    DEBUG: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# ------------------------
# Global Settings Loader
# ------------------------
try:
    settings = Settings()
    logger.info(f"✅ Settings loaded. Environment: {settings.ENVIRONMENT}, Debug: {settings.DEBUG}")
except ValidationError as e:
    logger.error(f"❌ Environment configuration error: missing or invalid settings!\n{e}")
    sys.exit(1)
