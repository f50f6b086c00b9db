from datetime import datetime, timedelta
from enum import Enum


class Tier(str, Enum):
    PLUS = "plus"
    MINI_PLUS = "mplus"

    @property
    def display_name(self) -> str:
        return "Barkle+" if self is Tier.PLUS else "Mini+"


class GiftDuration(str, Enum):
    MONTH = "month"
    YEAR = "year"

    @property
    def days(self) -> int:
        return 365 if self is GiftDuration.YEAR else 30

    @property
    def delta(self) -> timedelta:
        return timedelta(days=self.days)


class EffectiveStatus(str, Enum):
    FREE = "FREE"
    PLUS = "PLUS"
    MINI_PLUS = "MINI_PLUS"
    PLUS_CREDIT = "PLUS_CREDIT"
    MINI_PLUS_CREDIT = "MINI_PLUS_CREDIT"
    PLUS_PAUSED = "PLUS_PAUSED"
    MINI_PLUS_PAUSED = "MINI_PLUS_PAUSED"
    # Reported by the provider side only, resolve() never returns these
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    @property
    def is_paid(self) -> bool:
        return self in (EffectiveStatus.PLUS, EffectiveStatus.MINI_PLUS)

    @property
    def is_credit(self) -> bool:
        return self in (
            EffectiveStatus.PLUS_CREDIT,
            EffectiveStatus.MINI_PLUS_CREDIT,
            EffectiveStatus.PLUS_PAUSED,
            EffectiveStatus.MINI_PLUS_PAUSED,
        )

    @property
    def is_paused(self) -> bool:
        return self in (EffectiveStatus.PLUS_PAUSED, EffectiveStatus.MINI_PLUS_PAUSED)

    @property
    def is_active(self) -> bool:
        return self.is_paid or self.is_credit

    @property
    def has_plus_access(self) -> bool:
        return current_tier(self) is Tier.PLUS

    @property
    def has_mini_plus_access(self) -> bool:
        # Plus is a superset of Mini+
        return current_tier(self) is not None


_PLUS_STATUSES = {EffectiveStatus.PLUS, EffectiveStatus.PLUS_CREDIT, EffectiveStatus.PLUS_PAUSED}
_MINI_PLUS_STATUSES = {
    EffectiveStatus.MINI_PLUS,
    EffectiveStatus.MINI_PLUS_CREDIT,
    EffectiveStatus.MINI_PLUS_PAUSED,
}


def current_tier(status: EffectiveStatus) -> Tier | None:
    if status in _PLUS_STATUSES:
        return Tier.PLUS
    if status in _MINI_PLUS_STATUSES:
        return Tier.MINI_PLUS
    return None


def _after(moment: datetime | None, now: datetime) -> bool:
    return moment is not None and moment > now


def resolve(account, now: datetime) -> EffectiveStatus:
    """
    Compute the effective status of an account. Pure, first match wins:

    1. active Plus credit (paused if an external subscription is suspended)
    2. active Mini+ credit (same)
    3. paid Plus
    4. paid Mini+
    5. Free

    Credit outranks a concurrently active paid subscription.
    """
    paused = bool(account.paused_external_subscription_id)

    if _after(account.credit_plus_balance_end, now):
        return EffectiveStatus.PLUS_PAUSED if paused else EffectiveStatus.PLUS_CREDIT

    if _after(account.credit_mini_plus_balance_end, now):
        return EffectiveStatus.MINI_PLUS_PAUSED if paused else EffectiveStatus.MINI_PLUS_CREDIT

    if _after(account.subscription_end_date, now):
        if account.tier_plus:
            return EffectiveStatus.PLUS
        if account.tier_mini_plus:
            return EffectiveStatus.MINI_PLUS

    return EffectiveStatus.FREE


def paid_tier(account, now: datetime) -> Tier | None:
    """The tier of the unexpired paid subscription, ignoring credits."""
    if not _after(account.subscription_end_date, now):
        return None
    if account.tier_plus:
        return Tier.PLUS
    if account.tier_mini_plus:
        return Tier.MINI_PLUS
    return None


def has_plus_access(account, now: datetime) -> bool:
    return _after(account.credit_plus_balance_end, now) or paid_tier(account, now) is Tier.PLUS


class TransitionType(str, Enum):
    NEW = "new"
    EXTENSION = "extension"
    UPGRADE = "upgrade"
    CREDIT = "credit"


class GiftAction(str, Enum):
    """What redeeming a gift does to an account."""

    ACTIVATE = "activate"
    EXTEND = "extend"
    UPGRADE = "upgrade"
    PAUSE_AND_EXTEND = "pause_and_extend"
    CREDIT_FOR_LATER = "credit_for_later"

    @property
    def transition_type(self) -> TransitionType:
        return _TRANSITION_TYPES[self]

    @property
    def outcome(self) -> str:
        return _OUTCOMES[self]

    @property
    def pauses_billing(self) -> bool:
        return self in (GiftAction.UPGRADE, GiftAction.PAUSE_AND_EXTEND)


_TRANSITION_TYPES = {
    GiftAction.ACTIVATE: TransitionType.NEW,
    GiftAction.EXTEND: TransitionType.EXTENSION,
    GiftAction.UPGRADE: TransitionType.UPGRADE,
    GiftAction.PAUSE_AND_EXTEND: TransitionType.EXTENSION,
    GiftAction.CREDIT_FOR_LATER: TransitionType.CREDIT,
}

_OUTCOMES = {
    GiftAction.ACTIVATE: "activated",
    GiftAction.EXTEND: "extended",
    GiftAction.UPGRADE: "upgraded",
    GiftAction.PAUSE_AND_EXTEND: "credited",
    GiftAction.CREDIT_FOR_LATER: "credited",
}

_DECISIONS = {
    (None, Tier.MINI_PLUS): GiftAction.ACTIVATE,
    (None, Tier.PLUS): GiftAction.ACTIVATE,
    (Tier.MINI_PLUS, Tier.MINI_PLUS): GiftAction.EXTEND,
    (Tier.MINI_PLUS, Tier.PLUS): GiftAction.UPGRADE,
    (Tier.PLUS, Tier.MINI_PLUS): GiftAction.CREDIT_FOR_LATER,
    (Tier.PLUS, Tier.PLUS): GiftAction.PAUSE_AND_EXTEND,
}


def decide_gift_action(status: EffectiveStatus, gift_tier: Tier) -> GiftAction:
    return _DECISIONS[(current_tier(status), Tier(gift_tier))]
