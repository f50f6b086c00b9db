from flask import Blueprint, g, jsonify, request

from entitlements.billing.gift_tokens import get_gift_token_store
from entitlements.billing.redemption import redeem_gift
from entitlements.errors import InvalidOrRedeemedToken
from entitlements.extensions import limiter
from entitlements.security.guards import account_required

gift_bp = Blueprint("gift", __name__, url_prefix="/api/gift")


def _token_from(payload) -> str:
    token = (payload.get("token") or "").strip()
    if not token:
        raise InvalidOrRedeemedToken("Gift token is required")
    return token


@gift_bp.route("/redeem", methods=["POST"])
@limiter.limit("10 per hour")
@account_required
def redeem():
    """
    Redeem a gift token for the authenticated account.

    Returns:
        JSON with the resulting tier, end date and what happened
        (activated, extended, upgraded or credited)
    """
    token = _token_from(request.get_json(silent=True) or {})
    result = redeem_gift(token, g.account.id)
    return jsonify({
        "status": "success",
        "message": result["message"],
        "data": result,
    }), 200


@gift_bp.route("/check", methods=["GET"])
@limiter.limit("30 per hour")
@account_required
def check():
    """Preview a gift token without redeeming it."""
    token = _token_from(request.args)
    return jsonify({
        "status": "success",
        "data": get_gift_token_store().check(token),
    }), 200


@gift_bp.route("/purchased", methods=["GET"])
@account_required
def purchased():
    store = get_gift_token_store()
    return jsonify({
        "status": "success",
        "data": {
            "purchased": [gift.to_dict(include_token=True) for gift in store.list_purchased(g.account.id)],
            "redeemed": [gift.to_dict() for gift in store.list_redeemed(g.account.id)],
        },
    }), 200
