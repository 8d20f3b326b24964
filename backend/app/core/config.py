# backend/app/core/config.py

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

ALLOWED_ENVIRONMENTS = {"development", "test", "staging", "production"}
ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}
ALLOWED_LOG_FORMATS = {"console", "json"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -----------------------------
    # Environment
    # -----------------------------
    # Use: development | test | staging | production
    ENVIRONMENT: str = "development"

    # -----------------------------
    # DB
    # -----------------------------
    # Sync URL; the SQL store runs on a plain Session.
    DATABASE_URL: str = "sqlite:///./pharmacy_commissions.db"
    DATABASE_ECHO: bool = False

    # -----------------------------
    # Referrals / analytics
    # -----------------------------
    REFERRAL_EXPIRY_DAYS: int = 30
    TOP_PERFORMERS_LIMIT: int = 5

    # -----------------------------
    # Logging
    # -----------------------------
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"

    def model_post_init(self, __context) -> None:  # pydantic v2 hook
        env = (self.ENVIRONMENT or "").strip().lower()
        if env not in ALLOWED_ENVIRONMENTS:
            raise ValueError(
                f"Unsupported ENVIRONMENT={self.ENVIRONMENT!r}. Allowed: {sorted(ALLOWED_ENVIRONMENTS)}"
            )
        self.ENVIRONMENT = env

        # Referral windows of zero days would expire every referral on creation.
        if self.REFERRAL_EXPIRY_DAYS < 1:
            raise ValueError("REFERRAL_EXPIRY_DAYS must be at least 1.")
        if self.TOP_PERFORMERS_LIMIT < 1:
            raise ValueError("TOP_PERFORMERS_LIMIT must be at least 1.")

        self.LOG_LEVEL = (self.LOG_LEVEL or "").strip().upper()
        if self.LOG_LEVEL not in ALLOWED_LOG_LEVELS:
            raise ValueError(f"Unsupported LOG_LEVEL={self.LOG_LEVEL!r}. Allowed: {sorted(ALLOWED_LOG_LEVELS)}")

        self.LOG_FORMAT = (self.LOG_FORMAT or "").strip().lower()
        if self.LOG_FORMAT not in ALLOWED_LOG_FORMATS:
            raise ValueError(f"Unsupported LOG_FORMAT={self.LOG_FORMAT!r}. Allowed: {sorted(ALLOWED_LOG_FORMATS)}")

        if env == "production" and self.DATABASE_URL.startswith("sqlite"):
            raise ValueError("DATABASE_URL must point at a transactional server database in production.")


# this must exist for: `from app.core.config import settings`
settings = Settings()
