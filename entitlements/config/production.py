from .base import BaseConfig, ConfigurationError


class ProductionConfig(BaseConfig):
    """
    Production configuration.
    """

    DEBUG = False
    ENVIRONMENT = "production"

    REQUIRED_SETTINGS = (
        "SECRET_KEY",
        "JWT_SECRET_KEY",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    )

    @classmethod
    def validate(cls):
        missing = [name for name in cls.REQUIRED_SETTINGS if not getattr(cls, name)]
        if missing:
            raise ConfigurationError(
                f"Missing required production settings: {', '.join(missing)}"
            )

        if "sqlite" in cls.SQLALCHEMY_DATABASE_URI.lower():
            raise ConfigurationError("SQLite is not suitable for production")

        return cls
