from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    SERVICE_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    RUN_MIGRATIONS_ON_STARTUP: bool = True

    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "orderflow"
    POSTGRES_USER: str = "orderflow"
    POSTGRES_PASSWORD: str = "orderflow"
    # Overrides the Postgres settings above when set (e.g. sqlite for tests)
    DATABASE_URL: Optional[str] = None

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"

    GATEWAY_BASE_URL: str = "https://api-merchant.payos.vn"
    GATEWAY_CLIENT_ID: Optional[str] = None
    GATEWAY_API_KEY: Optional[str] = None
    GATEWAY_CHECKSUM_KEY: Optional[str] = None
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_RETURN_URL: Optional[str] = None
    GATEWAY_CANCEL_URL: Optional[str] = None
    FRONTEND_URL: str = "http://localhost:5173"

    MAIL_HOST: str = "smtp.gmail.com"
    MAIL_PORT: int = 587
    MAIL_USERNAME: Optional[str] = None
    MAIL_PASSWORD: Optional[str] = None
    MAIL_USE_TLS: bool = True
    MAIL_FROM: str = "Storefront <no-reply@example.com>"
    MAIL_REPLY_TO: Optional[str] = None
    MAIL_TIMEOUT_SECONDS: float = 10.0
    ADMIN_EMAIL: str = "admin@example.com"

    SCHEDULER_ENABLED: bool = True
    BUSINESS_TIMEZONE: str = "Asia/Ho_Chi_Minh"
    PAYMENT_REMINDER_AFTER_HOURS: float = 2
    AUTO_CANCEL_AFTER_HOURS: float = 6
    PENDING_CONFIRMATION_AFTER_HOURS: float = 24
    ORDER_SCAN_INTERVAL_MINUTES: float = 15
    DAILY_DIGEST_AT: str = "20:00"
    SUBSCRIPTION_REMINDER_AT: str = "08:00"
    SUBSCRIPTION_DIGEST_AT: str = "08:05"
    PENDING_CONFIRMATION_NUDGE_AT: str = "09:00"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
