# error_handlers.py
import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from subscription_sync.errors import BillingError, ConfigurationError, ProcessorError

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Register all error handlers for the application"""

    @app.errorhandler(BillingError)
    def handle_billing_error(error):
        context = {"path": request.path, "error_class": type(error).__name__}
        if isinstance(error, ProcessorError):
            logger.error(f"Processor error: {error.details}", extra={**context, **error.log_context()})
        elif isinstance(error, ConfigurationError) or error.status_code >= 500:
            logger.error(f"Billing error: {error.details}", extra=context)
        else:
            logger.warning(f"Billing request rejected: {error.details}", extra=context)

        response = jsonify(error.to_dict())
        response.status_code = error.status_code
        return response

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        if e.code >= 500:
            logger.error(f"HTTP {e.code}: {request.method} {request.path}")
        else:
            logger.info(f"HTTP {e.code}: {request.method} {request.path}")
        return jsonify({
            "error": e.name,
            "details": e.description,
            "path": request.path,
        }), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return jsonify({
            "error": "Server error",
            "details": "An internal server error occurred. Please try again later.",
            "path": request.path,
        }), 500
