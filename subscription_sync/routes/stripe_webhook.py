from flask import Blueprint, jsonify, request

from subscription_sync.extensions import limiter
from subscription_sync.services.webhook_dispatcher import StripeWebhookDispatcher

bp = Blueprint("stripe_webhook", __name__, url_prefix="/webhooks")


@bp.route("/stripe", methods=["POST"])
@limiter.exempt
def stripe_webhook():
    # Raw bytes: the signature covers the exact body Stripe sent.
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")

    outcome = StripeWebhookDispatcher().dispatch(payload, sig_header)
    return jsonify(outcome.to_response()), 200
