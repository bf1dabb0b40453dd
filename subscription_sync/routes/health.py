import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from subscription_sync.extensions import db
from subscription_sync.models import StripeConfig

bp = Blueprint("health", __name__)


def _check_database():
    start = time.time()
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db.session.rollback()
        return {"status": "error", "error": type(e).__name__}
    return {"status": "ok", "latency_ms": round((time.time() - start) * 1000, 2)}


def _check_stripe_config():
    try:
        record = StripeConfig.get_active()
    except SQLAlchemyError as e:
        db.session.rollback()
        return {"status": "error", "error": type(e).__name__}

    if record is not None:
        return {"status": "ok", "source": "database", **record.to_dict()}
    if current_app.config.get("STRIPE_SECRET_KEY"):
        return {"status": "ok", "source": "environment"}
    return {"status": "missing"}


@bp.route("/health", methods=["GET"])
def health():
    checks = {
        "database": _check_database(),
        "stripe": _check_stripe_config(),
    }
    overall = "ok" if all(c["status"] == "ok" for c in checks.values()) else "degraded"
    return jsonify({
        "status": overall,
        "timestamp": int(time.time()),
        "checks": checks,
        "environment": current_app.config.get("ENVIRONMENT", "unknown"),
    }), 200 if overall == "ok" else 503
