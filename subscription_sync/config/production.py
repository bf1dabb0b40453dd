import os

from .base import BaseConfig, ConfigurationError


class ProductionConfig(BaseConfig):
    """
    Production configuration.
    """

    DEBUG = False
    ENVIRONMENT = "production"

    # MUST be set via environment variable in real production
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL")
    SITE_URL = os.getenv("SITE_URL")

    @classmethod
    def validate(cls):
        missing = [
            name for name in ("SQLALCHEMY_DATABASE_URI", "SITE_URL", "SECRET_KEY")
            if not getattr(cls, name)
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required production settings: {', '.join(missing)}"
            )
        return True
