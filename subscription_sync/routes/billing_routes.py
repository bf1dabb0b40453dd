import logging

from flask import Blueprint, current_app, jsonify, request

from subscription_sync.extensions import limiter
from subscription_sync.schemas import CheckoutRequest, PortalRequest, SessionSyncRequest, parse_body
from subscription_sync.services.checkout_service import CheckoutService
from subscription_sync.services.portal_service import create_customer_portal_session
from subscription_sync.services.session_sync import SessionSyncService
from subscription_sync.services.subscription_access import get_current_subscription, has_access

logger = logging.getLogger(__name__)

bp = Blueprint("billing", __name__, url_prefix="/api/billing")


def _checkout_limit():
    return current_app.config.get("CHECKOUT_RATE_LIMIT", "20 per minute")


@bp.route("/checkout-session", methods=["POST"])
@limiter.limit(_checkout_limit)
def create_checkout_session():
    body = parse_body(CheckoutRequest, request.get_json(silent=True))
    session = CheckoutService().create_checkout_session(
        plan_id=body.plan_id,
        user_id=body.user_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        email=body.email,
    )
    return jsonify(session.to_dict()), 200


@bp.route("/customer-portal", methods=["POST"])
@limiter.limit(_checkout_limit)
def customer_portal():
    body = parse_body(PortalRequest, request.get_json(silent=True))
    url = create_customer_portal_session(body.user_id, body.return_url)
    return jsonify({"url": url}), 200


@bp.route("/sync-session", methods=["POST"])
@limiter.limit(_checkout_limit)
def sync_session():
    body = parse_body(SessionSyncRequest, request.get_json(silent=True))
    subscription = SessionSyncService().sync(body.session_id)
    return jsonify({
        "subscription": subscription.to_dict(),
        "hasAccess": has_access(subscription),
    }), 200


@bp.route("/subscription/<user_id>", methods=["GET"])
def current_subscription(user_id):
    subscription = get_current_subscription(user_id)
    return jsonify({
        "subscription": subscription.to_dict(),
        "hasAccess": has_access(subscription),
    }), 200
