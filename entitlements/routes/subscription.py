from flask import Blueprint, g, jsonify

from entitlements.billing.state_machine import get_entitlement_manager
from entitlements.security.guards import account_required

subscription_bp = Blueprint("subscription", __name__, url_prefix="/api/subscription")


@subscription_bp.route("/info", methods=["GET"])
@account_required
def info():
    """Current effective status and entitlement dates of the caller."""
    return jsonify({
        "status": "success",
        "data": get_entitlement_manager().subscription_summary(g.account.id),
    }), 200
