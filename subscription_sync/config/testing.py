from .base import BaseConfig


class TestingConfig(BaseConfig):
    TESTING = True
    ENVIRONMENT = "testing"
    SECRET_KEY = "test-secret-key"

    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SITE_URL = "https://library.test"

    STRIPE_SECRET_KEY = None
    STRIPE_PUBLISHABLE_KEY = None
    STRIPE_WEBHOOK_SECRET = None
    STRIPE_MAX_NETWORK_RETRIES = 0

    NOTIFICATION_WEBHOOK_URL = None
    NOTIFICATIONS_ASYNC = False

    SESSION_SYNC_MAX_ATTEMPTS = 2
    SESSION_SYNC_BASE_DELAY = 0
    SESSION_SYNC_TIME_BUDGET = 1

    RATELIMIT_ENABLED = False
    SENTRY_DSN = None
    METRICS_ENABLED = False
