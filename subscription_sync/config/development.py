from .base import BaseConfig


class DevelopmentConfig(BaseConfig):
    """
    Development configuration.
    """

    DEBUG = True
    ENVIRONMENT = "development"
    SECRET_KEY = "dev-secret-key-change-me"
    LOG_LEVEL = "DEBUG"
