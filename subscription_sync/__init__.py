"""
Flask application factory for subscription checkout and Stripe webhook sync.
"""

import logging

import sentry_sdk
from flask import Flask
from sentry_sdk.integrations.flask import FlaskIntegration

from subscription_sync.config import get_config
from subscription_sync.error_handlers import register_error_handlers
from subscription_sync.extensions import init_extensions
from subscription_sync.logging_config import setup_logging
from subscription_sync.middleware import init_request_id_middleware
from subscription_sync.observability import init_metrics
from subscription_sync.routes import register_blueprints
from subscription_sync.services.stripe_service import configure_stripe

logger = logging.getLogger(__name__)


def setup_sentry(app: Flask) -> None:
    """Initialize Sentry error tracking"""
    sentry_dsn = app.config.get("SENTRY_DSN")
    if not sentry_dsn:
        return

    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
        environment=app.config.get("ENVIRONMENT"),
        release=app.config.get("APP_VERSION"),
        send_default_pii=False,
    )
    logger.info("Sentry error tracking initialized")


def create_app(config_name=None) -> Flask:
    config_class = get_config(config_name)
    config_class.validate()

    app = Flask(__name__)
    app.config.from_object(config_class)

    init_request_id_middleware(app)
    setup_logging(app)
    setup_sentry(app)

    init_extensions(app)
    init_metrics(app)
    configure_stripe(app)

    # Models must be imported before create_all / migrations see the metadata.
    from subscription_sync import models  # noqa: F401

    register_blueprints(app)
    register_error_handlers(app)

    logger.info(
        "Application created",
        extra={"environment": app.config.get("ENVIRONMENT"), "app_name": app.config.get("APP_NAME")},
    )
    return app
