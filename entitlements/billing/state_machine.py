import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from entitlements.billing.provider import get_billing_provider
from entitlements.billing.status import (
    EffectiveStatus,
    GiftAction,
    GiftDuration,
    Tier,
    current_tier,
    decide_gift_action,
    has_plus_access,
    paid_tier,
    resolve,
)
from entitlements.errors import (
    AccountNotFound,
    ExternalProviderError,
    InvalidTransition,
    NoActiveSubscription,
    StaleWrite,
)
from entitlements.extensions import db
from entitlements.models import User
from entitlements.utils.time import isoformat, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


class Platform:
    STRIPE = "stripe"
    CREDIT = "credit"
    ADMIN = "admin"


@dataclass(frozen=True)
class GiftApplication:
    action: GiftAction
    tier: Tier
    end_date: datetime
    status: EffectiveStatus


@dataclass(frozen=True)
class ExpirationOutcome:
    changed: bool
    status: EffectiveStatus
    resumed: bool = False


def _account_id(account) -> str:
    return account.id if isinstance(account, User) else account


def _active(moment: datetime | None, now: datetime) -> bool:
    return moment is not None and moment > now


def _lapsed(moment: datetime | None, now: datetime) -> bool:
    return moment is not None and moment <= now


def _start_from(moment: datetime | None, now: datetime) -> datetime:
    return moment if _active(moment, now) else now


def _banked_days_pending(user, now: datetime) -> bool:
    """Banked Mini+ days that start once Plus credit ends, with no paid Plus ahead of them."""
    return bool(user.credit_mini_plus_banked_days) and paid_tier(user, now) is not Tier.PLUS


def _credit_covers(user, now: datetime) -> bool:
    if _active(user.credit_plus_balance_end, now) or _active(user.credit_mini_plus_balance_end, now):
        return True
    return _banked_days_pending(user, now)


class EntitlementManager:
    """
    Authoritative entitlement state machine.

    This class is the ONLY place where billing-relevant account fields change:
    - paid tier flags and subscription expiry
    - credit buckets (including banked Mini+ days)
    - the paused external subscription pointer
    - the billing provider customer link

    If it doesn't go through here, it doesn't happen.

    Every operation follows the same shape: read a snapshot, make any billing
    provider call with no database lock held, then re-read the row under
    SELECT ... FOR UPDATE and write only if its version still matches the
    snapshot. A conflict restarts the operation from fresh state, up to
    max_retries more times, after which StaleWrite reaches the caller.
    """

    def __init__(self, provider=None, *, clock=utcnow, max_retries: int | None = None):
        self.provider = provider if provider is not None else get_billing_provider()
        self.clock = clock
        self.max_retries = DEFAULT_MAX_RETRIES if max_retries is None else max_retries

    # ---- plumbing ----

    def _snapshot(self, user_id: str) -> User:
        user = db.session.get(User, user_id, populate_existing=True)
        if user is None:
            raise AccountNotFound(user_id=user_id)
        return user

    @contextmanager
    def _write(self, user_id: str, expected_version: int, now: datetime):
        """Short locked write phase. Commits on success, rolls back on any error."""
        try:
            user = (
                User.query
                .filter_by(id=user_id)
                .with_for_update()
                .populate_existing()
                .one_or_none()
            )
            if user is None:
                raise AccountNotFound(user_id=user_id)
            if user.version != expected_version:
                raise StaleWrite(user_id=user_id)

            yield user

            self._sync_denormalized(user, now)
            db.session.commit()

        except StaleDataError as e:
            db.session.rollback()
            raise StaleWrite(user_id=user_id) from e
        except Exception:
            db.session.rollback()
            raise

    def _run(self, operation: str, user_id: str, attempt):
        attempts = self.max_retries + 1
        for number in range(1, attempts + 1):
            try:
                return attempt()
            except StaleWrite:
                logger.warning(
                    f"Concurrent entitlement write on {operation}",
                    extra={"operation": operation, "user_id": user_id, "attempt": number},
                )
        raise StaleWrite(
            f"Gave up on {operation} after {attempts} conflicting writes",
            user_id=user_id,
        )

    @staticmethod
    def _sync_denormalized(user: User, now: datetime) -> bool:
        status = resolve(user, now)
        values = {
            "subscription_status": status.value,
            "has_plus_access": status.has_plus_access,
            "has_mini_plus_access": status.has_mini_plus_access,
        }
        changed = False
        for field, value in values.items():
            if getattr(user, field) != value:
                setattr(user, field, value)
                changed = True
        return changed

    def _pause_external(self, user: User, reason: str) -> str | None:
        """Suspend the account's active provider subscription, if it has one."""
        if user.paused_external_subscription_id:
            return user.paused_external_subscription_id
        if not user.external_customer_id:
            return None

        subscription = self.provider.find_active_subscription(user.external_customer_id)
        if subscription is None:
            return None

        self.provider.pause_subscription(subscription["id"], user_id=user.id, reason=reason)
        return subscription["id"]

    @contextmanager
    def _undo_pause_on_failure(self, user_id: str, paused_id: str | None):
        """
        Lift a provider pause made by the current attempt when its write does
        not commit. Otherwise the subscription would stay suspended with no
        stored pointer for the sweepers to find.
        """
        try:
            yield
        except Exception:
            if paused_id:
                try:
                    self.provider.resume_subscription(paused_id, user_id=user_id)
                except ExternalProviderError:
                    logger.error(
                        "Could not lift provider pause after failed write, resume it manually",
                        exc_info=True,
                        extra={"user_id": user_id, "subscription_id": paused_id},
                    )
                else:
                    logger.warning(
                        "Provider pause lifted after failed write",
                        extra={"user_id": user_id, "subscription_id": paused_id},
                    )
            raise

    # ---- bucket arithmetic, always called inside _write ----

    @staticmethod
    def _add_credit(user: User, tier: Tier, delta: timedelta, now: datetime) -> datetime:
        field = "credit_plus_balance_end" if tier is Tier.PLUS else "credit_mini_plus_balance_end"
        end = _start_from(getattr(user, field), now) + delta
        setattr(user, field, end)
        if paid_tier(user, now) is None:
            user.subscription_platform = Platform.CREDIT
        return end

    @staticmethod
    def _extend_paid(user: User, tier: Tier, delta: timedelta, now: datetime) -> datetime:
        if paid_tier(user, now) is not tier:
            raise NoActiveSubscription(
                f"No active {tier.display_name} subscription to extend",
                user_id=user.id,
            )
        user.subscription_end_date = user.subscription_end_date + delta
        return user.subscription_end_date

    @staticmethod
    def _bank_mini_plus(user: User, days: int, now: datetime) -> datetime:
        """Hold Mini+ days back until Plus access lapses. Returns the projected end."""
        user.credit_mini_plus_banked_days = (user.credit_mini_plus_banked_days or 0) + days

        plus_ends = [now]
        if _active(user.credit_plus_balance_end, now):
            plus_ends.append(user.credit_plus_balance_end)
        if paid_tier(user, now) is Tier.PLUS:
            plus_ends.append(user.subscription_end_date)
        start = max(max(plus_ends), _start_from(user.credit_mini_plus_balance_end, now))
        return start + timedelta(days=user.credit_mini_plus_banked_days)

    @staticmethod
    def _clear_pause(user: User, period_end: datetime | None):
        user.paused_external_subscription_id = None
        if period_end is not None:
            user.subscription_end_date = period_end
        if user.previous_tier:
            restored = Tier(user.previous_tier)
            user.tier_plus = restored is Tier.PLUS
            user.tier_mini_plus = restored is Tier.MINI_PLUS
            user.previous_tier = None
        if user.tier_plus or user.tier_mini_plus:
            user.subscription_platform = Platform.STRIPE

    # ---- gifts and credits ----

    def apply_gift_subscription(self, account, tier, duration) -> GiftApplication:
        """
        Apply a redeemed gift according to the account's current status:

        - Free: new credit of the gift tier
        - Mini+ gift on Mini+: extend the credit, or the paid subscription
        - Plus gift on Mini+: pause Mini+ billing and grant Plus credit
        - Mini+ gift on Plus: bank the days until Plus lapses
        - Plus gift on Plus: pause Plus billing and add Plus credit
        """
        user_id = _account_id(account)
        tier = Tier(tier)
        duration = GiftDuration(duration)

        def attempt():
            user = self._snapshot(user_id)
            version = user.version
            now = self.clock()
            action = decide_gift_action(resolve(user, now), tier)

            paused_id = None
            if action.pauses_billing:
                paused_id = self._pause_external(user, reason=f"gift_{action.value}")
            paused_here = paused_id if paused_id != user.paused_external_subscription_id else None

            with self._undo_pause_on_failure(user_id, paused_here):
                with self._write(user_id, version, now) as locked:
                    end_date = self._apply_action(locked, action, tier, duration, now, paused_id)
                    status = resolve(locked, now)

            logger.info(
                f"Gift applied: {action.value}",
                extra={
                    "user_id": user_id,
                    "tier": tier.value,
                    "duration": duration.value,
                    "end_date": isoformat(end_date),
                    "paused_subscription_id": paused_id,
                },
            )
            return GiftApplication(action=action, tier=tier, end_date=end_date, status=status)

        return self._run("apply_gift_subscription", user_id, attempt)

    def _apply_action(self, user, action, tier, duration, now, paused_id) -> datetime:
        if action is GiftAction.ACTIVATE:
            return self._add_credit(user, tier, duration.delta, now)

        if action is GiftAction.EXTEND:
            if _active(user.credit_mini_plus_balance_end, now):
                user.credit_mini_plus_balance_end += duration.delta
                return user.credit_mini_plus_balance_end
            return self._extend_paid(user, Tier.MINI_PLUS, duration.delta, now)

        if action is GiftAction.CREDIT_FOR_LATER:
            return self._bank_mini_plus(user, duration.days, now)

        # UPGRADE and PAUSE_AND_EXTEND both land in the Plus credit bucket
        if paused_id:
            user.paused_external_subscription_id = paused_id
        if action is GiftAction.UPGRADE and paid_tier(user, now) is Tier.MINI_PLUS:
            user.previous_tier = Tier.MINI_PLUS.value
        return self._add_credit(user, Tier.PLUS, duration.delta, now)

    def extend_subscription(self, account, duration, tier) -> datetime:
        user_id = _account_id(account)
        tier = Tier(tier)
        delta = GiftDuration(duration).delta

        def attempt():
            user = self._snapshot(user_id)
            version, now = user.version, self.clock()
            with self._write(user_id, version, now) as locked:
                end_date = self._extend_paid(locked, tier, delta, now)
            logger.info(
                "Subscription extended",
                extra={"user_id": user_id, "tier": tier.value, "end_date": isoformat(end_date)},
            )
            return end_date

        return self._run("extend_subscription", user_id, attempt)

    def store_gift_credit(self, account, tier, duration) -> datetime:
        """Add to a credit bucket without touching the paid subscription."""
        user_id = _account_id(account)
        tier = Tier(tier)
        duration = GiftDuration(duration)

        def attempt():
            user = self._snapshot(user_id)
            version, now = user.version, self.clock()
            with self._write(user_id, version, now) as locked:
                if tier is Tier.MINI_PLUS and has_plus_access(locked, now):
                    end_date = self._bank_mini_plus(locked, duration.days, now)
                else:
                    end_date = self._add_credit(locked, tier, duration.delta, now)
            logger.info(
                "Gift credit stored",
                extra={"user_id": user_id, "tier": tier.value, "end_date": isoformat(end_date)},
            )
            return end_date

        return self._run("store_gift_credit", user_id, attempt)

    # ---- expiry and billing pause ----

    def handle_subscription_expiration(self, account) -> ExpirationOutcome:
        """
        Settle everything that has lapsed: clear expired credits and paid tier
        flags, start banked Mini+ days when Plus access is gone, and resume a
        paused provider subscription once no credit covers the account. Banked
        days about to start count as cover, so billing stays paused until the
        Mini+ credit they become has run out.
        """
        user_id = _account_id(account)

        def attempt():
            user = self._snapshot(user_id)
            version, now = user.version, self.clock()

            paused_id = user.paused_external_subscription_id
            resumed = bool(paused_id) and not _credit_covers(user, now)
            period_end = None
            if resumed:
                period_end = self.provider.resume_subscription(paused_id, user_id=user_id)

            with self._write(user_id, version, now) as locked:
                if _lapsed(locked.credit_plus_balance_end, now):
                    locked.credit_plus_balance_end = None
                if _lapsed(locked.credit_mini_plus_balance_end, now):
                    locked.credit_mini_plus_balance_end = None

                if resumed:
                    self._clear_pause(locked, period_end)

                if _lapsed(locked.subscription_end_date, now) and (
                    locked.tier_plus or locked.tier_mini_plus
                ):
                    locked.tier_plus = False
                    locked.tier_mini_plus = False
                    if not locked.paused_external_subscription_id:
                        locked.previous_tier = None

                banked = locked.credit_mini_plus_banked_days or 0
                if banked and not has_plus_access(locked, now):
                    start = _start_from(locked.credit_mini_plus_balance_end, now)
                    locked.credit_mini_plus_balance_end = start + timedelta(days=banked)
                    locked.credit_mini_plus_banked_days = 0

                if paid_tier(locked, now) is None and locked.subscription_platform != Platform.CREDIT:
                    credit_left = _active(locked.credit_plus_balance_end, now) or _active(
                        locked.credit_mini_plus_balance_end, now
                    )
                    locked.subscription_platform = Platform.CREDIT if credit_left else None

                self._sync_denormalized(locked, now)
                changed = db.session.is_modified(locked)
                status = resolve(locked, now)

            if changed:
                logger.info(
                    "Expired entitlements settled",
                    extra={"user_id": user_id, "status": status.value, "resumed": resumed},
                )
            return ExpirationOutcome(changed=changed, status=status, resumed=resumed)

        return self._run("handle_subscription_expiration", user_id, attempt)

    def pause_billing(self, account, reason: str) -> str | None:
        user_id = _account_id(account)

        def attempt():
            user = self._snapshot(user_id)
            if user.paused_external_subscription_id:
                return user.paused_external_subscription_id

            version, now = user.version, self.clock()
            paused_id = self._pause_external(user, reason)
            if paused_id is None:
                return None

            with self._undo_pause_on_failure(user_id, paused_id):
                with self._write(user_id, version, now) as locked:
                    locked.paused_external_subscription_id = paused_id
            return paused_id

        return self._run("pause_billing", user_id, attempt)

    def resume_billing(self, account) -> bool:
        """
        Lift the provider pause and clear the pointer. False if nothing was
        paused, or banked Mini+ days still have to run before billing restarts.
        """
        user_id = _account_id(account)

        def attempt():
            user = self._snapshot(user_id)
            paused_id = user.paused_external_subscription_id
            if not paused_id:
                return False

            version, now = user.version, self.clock()
            if _banked_days_pending(user, now):
                logger.info(
                    "Banked Mini+ credit still to run, keeping billing paused",
                    extra={"user_id": user_id, "subscription_id": paused_id},
                )
                return False

            period_end = self.provider.resume_subscription(paused_id, user_id=user_id)

            with self._write(user_id, version, now) as locked:
                self._clear_pause(locked, period_end)

            logger.info(
                "Billing resumed",
                extra={"user_id": user_id, "subscription_id": paused_id},
            )
            return True

        return self._run("resume_billing", user_id, attempt)

    # ---- provider driven ----

    def grant_paid_subscription(self, account, tier, end_date: datetime, platform=Platform.STRIPE):
        user_id = _account_id(account)
        tier = Tier(tier)

        def attempt():
            user = self._snapshot(user_id)
            version, now = user.version, self.clock()
            with self._write(user_id, version, now) as locked:
                if tier is Tier.MINI_PLUS and paid_tier(locked, now) is Tier.PLUS:
                    logger.info(
                        "Ignoring Mini+ grant for account with active Plus",
                        extra={"user_id": user_id},
                    )
                    return resolve(locked, now)

                locked.tier_plus = tier is Tier.PLUS
                locked.tier_mini_plus = tier is Tier.MINI_PLUS
                locked.subscription_end_date = end_date
                locked.subscription_platform = platform
                return resolve(locked, now)

        return self._run("grant_paid_subscription", user_id, attempt)

    def cancel_paid_subscription(self, account, external_subscription_id: str | None = None):
        user_id = _account_id(account)

        def attempt():
            user = self._snapshot(user_id)
            version, now = user.version, self.clock()
            with self._write(user_id, version, now) as locked:
                locked.tier_plus = False
                locked.tier_mini_plus = False
                locked.subscription_end_date = None
                pointer = locked.paused_external_subscription_id
                if pointer and external_subscription_id in (None, pointer):
                    locked.paused_external_subscription_id = None
                    locked.previous_tier = None
                if locked.subscription_platform == Platform.STRIPE:
                    locked.subscription_platform = None
                return resolve(locked, now)

        return self._run("cancel_paid_subscription", user_id, attempt)

    def link_customer(self, account, customer_id: str | None):
        user_id = _account_id(account)

        def attempt():
            user = self._snapshot(user_id)
            if user.external_customer_id == customer_id:
                return False
            version, now = user.version, self.clock()
            with self._write(user_id, version, now) as locked:
                locked.external_customer_id = customer_id
            return True

        return self._run("link_customer", user_id, attempt)

    def unlink_customer(self, account, customer_id: str) -> bool:
        """Drop the customer link only if it still points at customer_id."""
        user = self._snapshot(_account_id(account))
        if user.external_customer_id != customer_id:
            return False
        return self.link_customer(user.id, None)

    # ---- admin ----

    def remove_subscription(self, account):
        user_id = _account_id(account)

        def attempt():
            user = self._snapshot(user_id)
            version, now = user.version, self.clock()
            with self._write(user_id, version, now) as locked:
                if locked.paused_external_subscription_id:
                    logger.warning(
                        "Removing subscription with a paused provider subscription",
                        extra={
                            "user_id": user_id,
                            "subscription_id": locked.paused_external_subscription_id,
                        },
                    )
                locked.tier_plus = False
                locked.tier_mini_plus = False
                locked.subscription_end_date = None
                locked.previous_tier = None
                locked.paused_external_subscription_id = None
                locked.subscription_platform = None
                return resolve(locked, now)

        return self._run("remove_subscription", user_id, attempt)

    def downgrade_subscription(self, account):
        """Plus to Mini+, keeping the paid expiry."""
        return self._switch_paid_tier(account, Tier.PLUS, Tier.MINI_PLUS)

    def upgrade_subscription(self, account):
        """Mini+ to Plus, keeping the paid expiry."""
        return self._switch_paid_tier(account, Tier.MINI_PLUS, Tier.PLUS)

    def _switch_paid_tier(self, account, source: Tier, target: Tier):
        user_id = _account_id(account)

        def attempt():
            user = self._snapshot(user_id)
            version, now = user.version, self.clock()
            with self._write(user_id, version, now) as locked:
                if paid_tier(locked, now) is not source:
                    raise InvalidTransition(
                        f"Account has no active {source.display_name} subscription",
                        user_id=user_id,
                    )
                locked.tier_plus = target is Tier.PLUS
                locked.tier_mini_plus = target is Tier.MINI_PLUS
                locked.previous_tier = None
                return resolve(locked, now)

        return self._run(f"switch_{source.value}_to_{target.value}", user_id, attempt)

    # ---- read side ----

    def update_subscription_status(self, account) -> EffectiveStatus:
        """
        Recompute the denormalized status columns from the timestamp fields.
        Idempotent: an unchanged account is never written.
        """
        user_id = _account_id(account)

        def attempt():
            user = self._snapshot(user_id)
            version, now = user.version, self.clock()
            with self._write(user_id, version, now) as locked:
                return resolve(locked, now)

        return self._run("update_subscription_status", user_id, attempt)

    def subscription_summary(self, account) -> dict:
        user = self._snapshot(_account_id(account))
        now = self.clock()
        status = resolve(user, now)
        tier = current_tier(status)
        return {
            "userId": user.id,
            "status": status.value,
            "tier": tier.value if tier else None,
            "isActive": status.is_active,
            "isPaid": status.is_paid,
            "isCredit": status.is_credit,
            "isPaused": status.is_paused,
            "hasPlusAccess": status.has_plus_access,
            "hasMiniPlusAccess": status.has_mini_plus_access,
            "subscriptionEndDate": isoformat(user.subscription_end_date),
            "creditPlusBalanceEnd": isoformat(user.credit_plus_balance_end),
            "creditMiniPlusBalanceEnd": isoformat(user.credit_mini_plus_balance_end),
            "creditMiniPlusBankedDays": user.credit_mini_plus_banked_days or 0,
            "previousTier": user.previous_tier,
            "platform": user.subscription_platform,
        }


def get_entitlement_manager() -> EntitlementManager:
    return EntitlementManager(
        get_billing_provider(),
        max_retries=current_app.config.get("ENTITLEMENT_MAX_RETRIES", DEFAULT_MAX_RETRIES),
    )
