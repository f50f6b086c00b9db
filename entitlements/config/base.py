import json
import os


class ConfigurationError(Exception):
    """
    Raised when an invalid or unsupported configuration is requested.
    """
    pass


def _int_or_none(value):
    if value in (None, "", "none", "None"):
        return None
    return int(value)


class BaseConfig:
    """
    Base configuration shared by all environments.
    """

    # Flask
    DEBUG = False
    TESTING = False
    SECRET_KEY = os.getenv("SECRET_KEY")
    ENVIRONMENT = "base"

    # Application
    APP_NAME = "Barkle Entitlements"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_REQUESTS = False

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///entitlements.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Redis (sweeper locks, rate limits)
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Auth
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")

    # Billing provider
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    # price id -> tier ("plus" | "mplus")
    STRIPE_PRICE_TIERS = json.loads(os.getenv("STRIPE_PRICE_TIERS", "{}"))

    # Error tracking
    SENTRY_DSN = os.getenv("SENTRY_DSN")

    # Gift tokens. None means gifts never expire un-redeemed.
    GIFT_TOKEN_TTL_DAYS = _int_or_none(os.getenv("GIFT_TOKEN_TTL_DAYS"))
    GIFT_TOKEN_BYTES = int(os.getenv("GIFT_TOKEN_BYTES", "24"))

    # Entitlement manager
    ENTITLEMENT_MAX_RETRIES = int(os.getenv("ENTITLEMENT_MAX_RETRIES", "3"))

    # Sweepers
    RESUME_LOOKAHEAD_MINUTES = int(os.getenv("RESUME_LOOKAHEAD_MINUTES", "60"))
    EXPIRATION_SWEEP_MINUTES = int(os.getenv("EXPIRATION_SWEEP_MINUTES", "60"))
    RESUME_SWEEP_MINUTES = int(os.getenv("RESUME_SWEEP_MINUTES", "15"))
    SWEEP_LOCK_TTL_SECONDS = int(os.getenv("SWEEP_LOCK_TTL_SECONDS", "900"))
    SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "500"))

    # Webhook ledger
    WEBHOOK_EVENT_RETENTION_DAYS = int(os.getenv("WEBHOOK_EVENT_RETENTION_DAYS", "30"))

    # Rate limiting
    RATELIMIT_ENABLED = True
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")

    @classmethod
    def validate(cls):
        """Hook for environment-specific checks. Base config accepts anything."""
        return cls
