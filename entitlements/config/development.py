from .base import BaseConfig


class DevelopmentConfig(BaseConfig):
    """
    Development configuration.
    """

    DEBUG = True
    ENVIRONMENT = "development"
    LOG_LEVEL = "DEBUG"
    LOG_REQUESTS = True

    SECRET_KEY = BaseConfig.SECRET_KEY or "dev-secret-key"
    JWT_SECRET_KEY = BaseConfig.JWT_SECRET_KEY or "dev-jwt-secret"
