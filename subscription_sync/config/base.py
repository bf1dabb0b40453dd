import os

from subscription_sync.errors import ConfigurationError


def _env_bool(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


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
    APP_NAME = "Subscription Sync"
    APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
    SITE_URL = os.getenv("SITE_URL", "http://localhost:5173")
    FRONTEND_URL = os.getenv("FRONTEND_URL")

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///subscription_sync.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Stripe: environment credentials are only used when no record is stored
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_PUBLISHABLE_KEY = os.getenv("STRIPE_PUBLISHABLE_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION", "2024-12-18.acacia")
    STRIPE_MAX_NETWORK_RETRIES = int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "2"))
    STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))

    # Subscriptions
    SUBSCRIPTION_TERM_DAYS = int(os.getenv("SUBSCRIPTION_TERM_DAYS", "365"))
    SESSION_SYNC_MAX_ATTEMPTS = int(os.getenv("SESSION_SYNC_MAX_ATTEMPTS", "4"))
    SESSION_SYNC_BASE_DELAY = float(os.getenv("SESSION_SYNC_BASE_DELAY", "0.5"))
    SESSION_SYNC_TIME_BUDGET = float(os.getenv("SESSION_SYNC_TIME_BUDGET", "8"))

    # Notifications
    NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
    NOTIFICATION_TIMEOUT = int(os.getenv("NOTIFICATION_TIMEOUT", "30"))
    NOTIFICATIONS_ASYNC = True

    # Rate limiting
    RATELIMIT_ENABLED = _env_bool("RATELIMIT_ENABLED", True)
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    RATELIMIT_DEFAULT = os.getenv("RATELIMIT_DEFAULT", "200 per hour")
    CHECKOUT_RATE_LIMIT = os.getenv("CHECKOUT_RATE_LIMIT", "20 per minute")

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_REQUESTS = _env_bool("LOG_REQUESTS", False)
    METRICS_ENABLED = _env_bool("METRICS_ENABLED", True)

    @classmethod
    def validate(cls):
        """Hook for environments that must fail fast on missing settings."""
        return True


__all__ = ["BaseConfig", "ConfigurationError"]
