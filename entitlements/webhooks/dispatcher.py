import logging
from datetime import timedelta

from flask import current_app

from entitlements.billing.gift_tokens import get_gift_token_store
from entitlements.billing.provider import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    subscription_period_end,
    subscription_price_id,
)
from entitlements.billing.state_machine import get_entitlement_manager
from entitlements.billing.status import GiftDuration, Tier
from entitlements.extensions import db
from entitlements.models import User
from entitlements.utils.time import utcnow
from entitlements.webhooks import ledger

logger = logging.getLogger(__name__)

PROVIDER = "stripe"
ENDED_SUBSCRIPTION_STATUSES = ("canceled", "unpaid", "incomplete_expired")
MAX_PERIOD_AHEAD = timedelta(days=2 * 365)


def process_stripe_event(event, *, manager=None, store=None) -> dict:
    """
    Apply a verified Stripe event at most once.

    Replays short-circuit on the ledger. A handler failure propagates before
    anything is recorded so the provider redelivers.
    """
    event_id = event["id"]
    event_type = event["type"]

    if ledger.already_processed(PROVIDER, event_id):
        logger.info("Duplicate webhook ignored", extra={"event_id": event_id, "event_type": event_type})
        return {"received": True, "duplicate": True}

    handler = _HANDLERS.get(event_type)
    obj = event["data"]["object"]
    user_id = None

    if handler is None:
        logger.info("Unhandled webhook type acknowledged", extra={"event_type": event_type})
    else:
        manager = manager or get_entitlement_manager()
        user_id = handler(obj, manager=manager, store=store)

    recorded = ledger.record_processed(PROVIDER, event_id, event_type, obj, user_id)
    logger.info(
        "Webhook processed",
        extra={"event_id": event_id, "event_type": event_type, "user_id": user_id},
    )
    return {"received": True, "duplicate": not recorded}


# ---- lookups ----

def _metadata(obj) -> dict:
    return obj.get("metadata") or {}


def _find_user(customer_id: str | None, metadata: dict) -> User | None:
    if customer_id:
        user = User.query.filter_by(external_customer_id=customer_id).first()
        if user is not None:
            return user
    user_id = metadata.get("userId")
    if user_id:
        return db.session.get(User, user_id)
    return None


def tier_for_subscription(subscription) -> Tier:
    price_tiers = current_app.config.get("STRIPE_PRICE_TIERS") or {}
    price_id = subscription_price_id(subscription)
    if price_id in price_tiers:
        return Tier(price_tiers[price_id])

    plan = _metadata(subscription).get("plan")
    if plan in (Tier.PLUS.value, Tier.MINI_PLUS.value):
        return Tier(plan)

    logger.warning(
        "Could not determine tier for subscription, defaulting to Plus",
        extra={"subscription_id": subscription.get("id"), "price_id": price_id},
    )
    return Tier.PLUS


def _valid_period_end(period_end) -> bool:
    now = utcnow()
    return period_end is not None and now < period_end < now + MAX_PERIOD_AHEAD


# ---- handlers: return the affected user id, or None ----

def handle_subscription_upsert(subscription, *, manager, store=None):
    user = _find_user(subscription.get("customer"), _metadata(subscription))
    if user is None:
        logger.warning(
            "No account for subscription",
            extra={"subscription_id": subscription.get("id"), "customer_id": subscription.get("customer")},
        )
        return None

    status = subscription.get("status")
    if status in ACTIVE_SUBSCRIPTION_STATUSES:
        period_end = subscription_period_end(subscription)
        if not _valid_period_end(period_end):
            logger.warning(
                "Ignoring subscription with implausible period end",
                extra={"subscription_id": subscription.get("id"), "period_end": str(period_end)},
            )
            return user.id
        manager.grant_paid_subscription(user.id, tier_for_subscription(subscription), period_end)
    elif status in ENDED_SUBSCRIPTION_STATUSES:
        manager.cancel_paid_subscription(user.id, subscription.get("id"))
    else:
        logger.info(
            "Subscription status needs no entitlement change",
            extra={"subscription_id": subscription.get("id"), "status": status},
        )
    return user.id


def handle_subscription_deleted(subscription, *, manager, store=None):
    user = _find_user(subscription.get("customer"), _metadata(subscription))
    if user is None:
        return None
    manager.cancel_paid_subscription(user.id, subscription.get("id"))
    return user.id


def handle_invoice_paid(invoice, *, manager, store=None):
    subscription_id = invoice.get("subscription")
    if not subscription_id:
        # one-off payments, gifts included, arrive via checkout.session.completed
        return None

    user = _find_user(invoice.get("customer"), _metadata(invoice))
    if user is None:
        return None

    subscription = manager.provider.retrieve_subscription(subscription_id)
    period_end = subscription_period_end(subscription)
    if _valid_period_end(period_end):
        manager.grant_paid_subscription(user.id, tier_for_subscription(subscription), period_end)
    return user.id


def handle_checkout_completed(session, *, manager, store=None):
    metadata = _metadata(session)
    if metadata.get("isGift") != "true":
        return metadata.get("userId")
    if session.get("mode") != "payment" or session.get("payment_status") != "paid":
        logger.info("Gift checkout not paid yet", extra={"session_id": session.get("id")})
        return metadata.get("userId")

    store = store or get_gift_token_store()
    gift = store.issue(
        metadata.get("userId"),
        Tier(metadata.get("plan", Tier.PLUS.value)),
        GiftDuration(metadata.get("subscriptionType", GiftDuration.MONTH.value)),
        checkout_session_id=session.get("id"),
        message=metadata.get("message") or None,
    )
    logger.info("Gift purchased", extra={"gift_id": gift.id, "session_id": session.get("id")})
    return gift.purchased_by_user_id


def handle_customer_deleted(customer, *, manager, store=None):
    user = _find_user(customer.get("id"), _metadata(customer))
    if user is None:
        return None
    manager.unlink_customer(user.id, customer.get("id"))
    return user.id


_HANDLERS = {
    "customer.subscription.created": handle_subscription_upsert,
    "customer.subscription.updated": handle_subscription_upsert,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_paid,
    "checkout.session.completed": handle_checkout_completed,
    "customer.deleted": handle_customer_deleted,
}
