import logging

from entitlements.billing.gift_tokens import get_gift_token_store
from entitlements.billing.state_machine import get_entitlement_manager
from entitlements.billing.status import GiftAction, GiftDuration, Tier
from entitlements.utils.time import isoformat

logger = logging.getLogger(__name__)


def _describe(action: GiftAction, tier: Tier, days: int) -> str:
    name = tier.display_name
    if action is GiftAction.ACTIVATE:
        return f"{name} activated for {days} days"
    if action is GiftAction.EXTEND:
        return f"{name} extended by {days} days"
    if action is GiftAction.UPGRADE:
        return f"Upgraded to {name} for {days} days, your Mini+ billing is paused until it ends"
    if action is GiftAction.PAUSE_AND_EXTEND:
        return f"{days} days of {name} added as credit, your billing is paused until it is used"
    return f"{days} days of {name} saved as credit for when your current plan ends"


def redeem_gift(token: str, user_id: str, *, store=None, manager=None) -> dict:
    """
    Claim a gift token for user_id and apply it.

    The claim is the atomic part and is final: a token is never handed back.
    If applying the entitlement fails afterwards (billing provider down, write
    conflict) the gift is flagged and the error propagates. Calling this again
    with the same token and account retries the application.
    """
    store = store or get_gift_token_store()
    manager = manager or get_entitlement_manager()

    gift = store.find_redeemable(token)
    if gift is not None:
        store.redeem(token, user_id)
    else:
        gift = store.claim_failed_application(token, user_id)
        if gift is None:
            store.raise_unredeemable(token)

    tier = Tier(gift.tier)
    duration = GiftDuration(gift.duration)

    try:
        applied = manager.apply_gift_subscription(user_id, tier, duration)
    except Exception as e:
        logger.error(
            "Gift application failed, token kept for retry by the redeemer",
            exc_info=True,
            extra={"user_id": user_id, "gift_tier": tier.value},
        )
        store.mark_application_failed(token, user_id, reason=type(e).__name__)
        raise

    store.record_application(
        token,
        action=applied.action.value,
        creditApplied=True,
        subscriptionEndDate=isoformat(applied.end_date),
    )

    return {
        "tier": tier.value,
        "subscription_end_date": isoformat(applied.end_date),
        "action": applied.action.outcome,
        "status": applied.status.value,
        "message": _describe(applied.action, tier, duration.days),
    }
