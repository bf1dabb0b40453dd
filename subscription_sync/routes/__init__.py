from .billing_routes import bp as billing_bp
from .health import bp as health_bp
from .stripe_webhook import bp as stripe_webhook_bp


def register_blueprints(app):
    app.register_blueprint(billing_bp)
    app.register_blueprint(stripe_webhook_bp)
    app.register_blueprint(health_bp)


__all__ = ["billing_bp", "health_bp", "stripe_webhook_bp", "register_blueprints"]
