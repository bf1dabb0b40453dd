"""
Flask extensions initialization module.
"""

import logging

from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

# Initialize extensions
db = SQLAlchemy()
migrate = Migrate()
cors = CORS()
limiter = Limiter(key_func=get_remote_address)

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize all Flask extensions for the application."""

    db.init_app(app)
    logger.info("SQLAlchemy initialized")

    migrate.init_app(app, db)
    logger.info("Flask-Migrate initialized")

    limiter.init_app(app)
    logger.info(
        "Rate limiter initialized",
        extra={"enabled": app.config.get("RATELIMIT_ENABLED", True)},
    )

    init_cors(app)


def init_cors(app):
    """Restrict cross-origin access to the API routes and the configured frontend."""
    frontend_url = app.config.get("FRONTEND_URL")

    if not frontend_url:
        if app.config.get("ENVIRONMENT") == "production":
            logger.warning("FRONTEND_URL not set, cross-origin requests will be rejected")
        return

    if frontend_url == "*" and app.config.get("ENVIRONMENT") == "production":
        raise RuntimeError("Wildcard CORS origin '*' is not allowed in production")

    cors.init_app(
        app,
        resources={
            r"/api/*": {
                "origins": frontend_url,
                "allow_headers": ["Content-Type", "Authorization", "X-Request-ID"],
                "methods": ["GET", "POST", "OPTIONS"],
                "expose_headers": ["X-Request-ID"],
                "max_age": 86400,
            }
        },
    )
    logger.info("CORS configured", extra={"origin": frontend_url})


__all__ = ["db", "migrate", "cors", "limiter", "init_extensions"]
