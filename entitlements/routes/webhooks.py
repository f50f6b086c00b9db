from flask import Blueprint, jsonify, request

from entitlements.billing.provider import get_billing_provider
from entitlements.extensions import limiter
from entitlements.webhooks.dispatcher import process_stripe_event

webhook_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


@webhook_bp.route("/stripe", methods=["POST"])
@limiter.exempt
def stripe_webhook():
    """
    Stripe event endpoint. 200 only once the event is in the ledger; any
    failure returns non-2xx so Stripe redelivers.
    """
    event = get_billing_provider().construct_event(
        request.get_data(), request.headers.get("Stripe-Signature")
    )
    result = process_stripe_event(event)
    return jsonify(result), 200
