from .base import BaseConfig


class TestingConfig(BaseConfig):
    """
    Test configuration. External services are mocked by the test suite.
    """

    TESTING = True
    ENVIRONMENT = "testing"

    SECRET_KEY = "test-secret-key"
    JWT_SECRET_KEY = "test-jwt-secret-key-0123456789abcdef"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"

    STRIPE_SECRET_KEY = "sk_test_mock"
    STRIPE_WEBHOOK_SECRET = "whsec_test_mock"
    STRIPE_PRICE_TIERS = {
        "price_plus_month": "plus",
        "price_mplus_month": "mplus",
    }

    GIFT_TOKEN_TTL_DAYS = None
    RATELIMIT_ENABLED = False
