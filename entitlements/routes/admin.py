from flask import Blueprint, current_app, g, jsonify, request

from entitlements.audit.logger import log_action
from entitlements.billing.customers import cleanup_duplicate_customers
from entitlements.billing.state_machine import get_entitlement_manager
from entitlements.billing.status import GiftDuration, Tier, paid_tier
from entitlements.billing.sweepers import ExpirationSweeper
from entitlements.errors import AccountNotFound, InvalidTransition, NoActiveSubscription
from entitlements.extensions import db
from entitlements.models import User
from entitlements.security.guards import admin_required
from entitlements.utils.redis_lock import redis_lock
from entitlements.utils.time import isoformat

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")

ACTIONS = ("add", "extend", "remove", "downgrade", "upgrade", "add-gift-credit")


def _parse(enum_cls, value, field):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidTransition(f"Invalid {field}: {value!r}", field=field) from None


@admin_bp.route("/subscriptions/<user_id>", methods=["POST"])
@admin_required
def manage_subscription(user_id):
    """
    Change a user's entitlement directly, without a gift token or payment.

    Body:
        action: add | extend | remove | downgrade | upgrade | add-gift-credit
        plan: plus | mplus (add, add-gift-credit)
        subscriptionType: month | year (add, extend, add-gift-credit)
    """
    data = request.get_json(silent=True) or {}
    action = data.get("action")
    if action not in ACTIONS:
        raise InvalidTransition(f"Invalid action: {action!r}", allowed=list(ACTIONS))

    user = db.session.get(User, user_id)
    if user is None:
        raise AccountNotFound(user_id=user_id)

    manager = get_entitlement_manager()
    duration = _parse(GiftDuration, data.get("subscriptionType", "month"), "subscriptionType")
    result = {}

    if action == "add":
        tier = _parse(Tier, data.get("plan"), "plan")
        applied = manager.apply_gift_subscription(user_id, tier, duration)
        result = {"action": applied.action.outcome, "endDate": isoformat(applied.end_date)}

    elif action == "extend":
        tier = paid_tier(user, manager.clock())
        if tier is None:
            raise NoActiveSubscription(user_id=user_id)
        result = {"endDate": isoformat(manager.extend_subscription(user_id, duration, tier))}

    elif action == "add-gift-credit":
        tier = _parse(Tier, data.get("plan"), "plan")
        result = {"endDate": isoformat(manager.store_gift_credit(user_id, tier, duration))}

    elif action == "remove":
        manager.remove_subscription(user_id)

    elif action == "downgrade":
        manager.downgrade_subscription(user_id)

    elif action == "upgrade":
        manager.upgrade_subscription(user_id)

    log_action(
        f"subscription.{action}",
        actor_id=g.account.id,
        target_user_id=user_id,
        meta={"request": data, "result": result},
    )

    return jsonify({
        "status": "success",
        "message": f"Subscription {action} applied to {user_id}",
        "data": {**result, "subscription": manager.subscription_summary(user_id)},
    }), 200


@admin_bp.route("/subscriptions/sweep", methods=["POST"])
@admin_required
def force_sweep():
    """Run the expiration sweep now and report how many accounts changed."""
    sweeper = ExpirationSweeper(batch_size=current_app.config.get("SWEEP_BATCH_SIZE", 500))
    with redis_lock("sweep:expiration", current_app.config.get("SWEEP_LOCK_TTL_SECONDS", 900)):
        report = sweeper.run()

    log_action("subscription.sweep", actor_id=g.account.id, meta=report.to_dict())
    return jsonify({
        "status": "success",
        "message": f"{report.changed} accounts changed",
        "data": {"changed": report.changed, **report.to_dict()},
    }), 200


@admin_bp.route("/customers/<user_id>/cleanup", methods=["POST"])
@admin_required
def cleanup_customers(user_id):
    result = cleanup_duplicate_customers(user_id)
    log_action(
        "customer.cleanup",
        actor_id=g.account.id,
        target_user_id=user_id,
        meta=result.to_dict(),
    )
    return jsonify({"status": "success", "data": result.to_dict()}), 200
