import logging
import secrets
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from entitlements.billing.status import GiftDuration, Tier, TransitionType, decide_gift_action, resolve
from entitlements.errors import AccountNotFound, InvalidOrRedeemedToken, TokenExpired
from entitlements.extensions import db
from entitlements.models import GiftedSubscription, GiftStatus, User
from entitlements.utils.time import isoformat, utcnow

logger = logging.getLogger(__name__)

MAX_TOKEN_ATTEMPTS = 5


class GiftTokenStore:
    """
    Issues and redeems single-use gift tokens.

    Status changes are conditional bulk UPDATEs keyed on the expected prior
    status, so of any number of concurrent redemptions exactly one sees a
    matched row.
    """

    def __init__(self, *, clock=utcnow, ttl_days: int | None = None, token_bytes: int = 24):
        self.clock = clock
        self.ttl_days = ttl_days
        self.token_bytes = token_bytes

    # ---- issue ----

    def issue(
        self,
        purchaser_id: str | None,
        tier,
        duration,
        checkout_session_id: str | None = None,
        message: str | None = None,
    ) -> GiftedSubscription:
        tier = Tier(tier)
        duration = GiftDuration(duration)

        if checkout_session_id:
            existing = self._by_checkout_session(checkout_session_id)
            if existing is not None:
                logger.info(
                    "Gift already issued for checkout session",
                    extra={"checkout_session_id": checkout_session_id, "gift_id": existing.id},
                )
                return existing

        now = self.clock()
        expires_at = now + timedelta(days=self.ttl_days) if self.ttl_days else None

        for attempt in range(1, MAX_TOKEN_ATTEMPTS + 1):
            token = secrets.token_urlsafe(self.token_bytes)
            if GiftedSubscription.query.filter_by(token=token).first() is not None:
                logger.warning("Gift token collision, regenerating", extra={"attempt": attempt})
                continue

            gift = GiftedSubscription(
                token=token,
                tier=tier.value,
                duration=duration.value,
                status=GiftStatus.PENDING_REDEMPTION,
                purchased_by_user_id=purchaser_id,
                external_checkout_session_id=checkout_session_id,
                message=message,
                expires_at=expires_at,
                created_at=now,
                meta={},
            )
            db.session.add(gift)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                if checkout_session_id:
                    existing = self._by_checkout_session(checkout_session_id)
                    if existing is not None:
                        return existing
                logger.warning("Gift token insert conflict, regenerating", extra={"attempt": attempt})
                continue

            logger.info(
                "Gift token issued",
                extra={
                    "gift_id": gift.id,
                    "purchaser_id": purchaser_id,
                    "tier": tier.value,
                    "duration": duration.value,
                },
            )
            return gift

        raise RuntimeError(f"Could not generate a unique gift token in {MAX_TOKEN_ATTEMPTS} attempts")

    def _by_checkout_session(self, checkout_session_id: str) -> GiftedSubscription | None:
        return GiftedSubscription.query.filter_by(
            external_checkout_session_id=checkout_session_id
        ).first()

    # ---- lookup ----

    def _not_past_deadline(self, now):
        return or_(GiftedSubscription.expires_at.is_(None), GiftedSubscription.expires_at > now)

    def find_redeemable(self, token: str) -> GiftedSubscription | None:
        if not token:
            return None
        return GiftedSubscription.query.filter(
            GiftedSubscription.token == token,
            GiftedSubscription.status == GiftStatus.PENDING_REDEMPTION,
            self._not_past_deadline(self.clock()),
        ).first()

    def raise_unredeemable(self, token: str):
        """Raise the error that explains why token cannot be redeemed."""
        gift = GiftedSubscription.query.filter_by(token=token).first() if token else None
        if gift is None:
            raise InvalidOrRedeemedToken("Invalid gift token")
        if gift.status == GiftStatus.REDEEMED:
            raise InvalidOrRedeemedToken("This gift has already been redeemed")
        if gift.status == GiftStatus.EXPIRED or (
            gift.expires_at is not None and gift.expires_at <= self.clock()
        ):
            raise TokenExpired("This gift has expired")
        raise InvalidOrRedeemedToken("Invalid gift token")

    def check(self, token: str) -> dict:
        gift = self.find_redeemable(token)
        if gift is None:
            self.raise_unredeemable(token)

        purchaser = gift.purchased_by
        return {
            "valid": True,
            "tier": gift.tier,
            "duration": gift.duration,
            "message": gift.message,
            "purchasedBy": purchaser.username if purchaser else None,
            "createdAt": isoformat(gift.created_at),
            "expiresAt": isoformat(gift.expires_at),
        }

    def list_purchased(self, user_id: str) -> list[GiftedSubscription]:
        return (
            GiftedSubscription.query
            .filter_by(purchased_by_user_id=user_id)
            .order_by(GiftedSubscription.created_at.desc())
            .all()
        )

    def list_redeemed(self, user_id: str) -> list[GiftedSubscription]:
        return (
            GiftedSubscription.query
            .filter_by(redeemed_by_user_id=user_id)
            .order_by(GiftedSubscription.redeemed_at.desc())
            .all()
        )

    # ---- state transitions ----

    def redeem(self, token: str, redeemer_id: str) -> TransitionType:
        """
        Claim token for redeemer_id: pending_redemption -> redeemed.

        The transition type is computed from the redeemer's current status and
        stored with the token. Zero matched rows means someone else got there
        first, or the token was never redeemable.
        """
        gift = GiftedSubscription.query.filter_by(token=token).first() if token else None
        if gift is None:
            raise InvalidOrRedeemedToken("Invalid gift token")

        redeemer = db.session.get(User, redeemer_id)
        if redeemer is None:
            raise AccountNotFound(user_id=redeemer_id)

        now = self.clock()
        action = decide_gift_action(resolve(redeemer, now), Tier(gift.tier))
        transition = action.transition_type
        meta = dict(gift.meta or {})
        meta.update({"transitionType": transition.value, "redeemedAt": now.isoformat()})

        matched = (
            GiftedSubscription.query
            .filter(
                GiftedSubscription.token == token,
                GiftedSubscription.status == GiftStatus.PENDING_REDEMPTION,
                self._not_past_deadline(now),
            )
            .update(
                {
                    GiftedSubscription.status: GiftStatus.REDEEMED,
                    GiftedSubscription.redeemed_by_user_id: redeemer_id,
                    GiftedSubscription.redeemed_at: now,
                    GiftedSubscription.meta: meta,
                },
                synchronize_session=False,
            )
        )
        if matched != 1:
            db.session.rollback()
            self.raise_unredeemable(token)

        db.session.commit()
        logger.info(
            "Gift token redeemed",
            extra={"gift_id": gift.id, "redeemer_id": redeemer_id, "transition": transition.value},
        )
        return transition

    def mark_application_failed(self, token: str, redeemer_id: str, reason: str) -> None:
        """
        Flag a claimed gift whose entitlement could not be applied. The token
        stays redeemed, so only redeemer_id can retry it.
        """
        gift = GiftedSubscription.query.filter_by(token=token, redeemed_by_user_id=redeemer_id).one()
        now = self.clock()
        meta = dict(gift.meta or {})
        meta.update({"applicationFailed": True, "applicationError": reason, "applicationFailedAt": now.isoformat()})
        gift.application_failed_at = now
        gift.meta = meta
        db.session.commit()
        logger.warning(
            "Gift redeemed but not applied",
            extra={"gift_id": gift.id, "redeemer_id": redeemer_id, "reason": reason},
        )

    def claim_failed_application(self, token: str, redeemer_id: str) -> GiftedSubscription | None:
        """
        Take over the retry of a failed application. Only the account that
        redeemed the token can, and of concurrent retries exactly one wins.
        """
        if not token:
            return None
        matched = (
            GiftedSubscription.query
            .filter(
                GiftedSubscription.token == token,
                GiftedSubscription.status == GiftStatus.REDEEMED,
                GiftedSubscription.redeemed_by_user_id == redeemer_id,
                GiftedSubscription.application_failed_at.isnot(None),
            )
            .update({GiftedSubscription.application_failed_at: None}, synchronize_session=False)
        )
        db.session.commit()
        if matched != 1:
            return None
        gift = GiftedSubscription.query.filter_by(token=token).populate_existing().one()
        logger.info("Retrying gift application", extra={"gift_id": gift.id, "redeemer_id": redeemer_id})
        return gift

    def record_application(self, token: str, **details) -> None:
        gift = GiftedSubscription.query.filter_by(token=token).one()
        meta = dict(gift.meta or {})
        meta.pop("applicationFailed", None)
        meta.pop("applicationError", None)
        meta.update(details)
        gift.meta = meta
        db.session.commit()

    def sweep_expired(self) -> int:
        """Move overdue pending tokens to expired. Accounts are untouched."""
        now = self.clock()
        count = (
            GiftedSubscription.query
            .filter(
                GiftedSubscription.status == GiftStatus.PENDING_REDEMPTION,
                GiftedSubscription.expires_at.isnot(None),
                GiftedSubscription.expires_at <= now,
            )
            .update({GiftedSubscription.status: GiftStatus.EXPIRED}, synchronize_session=False)
        )
        db.session.commit()
        if count:
            logger.info("Expired gift tokens swept", extra={"count": count})
        return count


def get_gift_token_store() -> GiftTokenStore:
    return GiftTokenStore(
        ttl_days=current_app.config.get("GIFT_TOKEN_TTL_DAYS"),
        token_bytes=current_app.config.get("GIFT_TOKEN_BYTES", 24),
    )
