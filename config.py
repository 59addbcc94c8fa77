from __future__ import annotations
import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "royals_and_radiant")

    # Public base URL of the storefront, used for Stripe redirects
    APP_URL: str = "http://localhost:3000"

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    RESEND_API_KEY: str = ""
    MAIL_FROM: str = "Royals and Radiant <confirmation@confirmation.royalsandradiant.com>"
    CONTACT_INBOX: str = "hello@royalsandradiant.com"

    CURRENCY: str = "usd"
    ALLOWED_SHIPPING_COUNTRIES: list[str] = ["US", "CA", "GB", "AU", "IN"]
    EXTERNAL_TIMEOUT_SECONDS: float = 10.0

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["*"]


settings = Settings()
