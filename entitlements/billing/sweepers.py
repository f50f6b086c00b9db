"""
Stateless sweepers. Each one queries candidate accounts and hands them to the
EntitlementManager one at a time; a failing account is logged and skipped.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import and_, or_

from entitlements.billing.state_machine import get_entitlement_manager
from entitlements.extensions import db
from entitlements.models import User
from entitlements.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    changed: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"checked": self.checked, "changed": self.changed, "failed": self.failed}


class Sweeper:
    name = "sweep"

    def __init__(self, manager=None, *, clock=utcnow, batch_size: int = 500):
        self._manager = manager
        self.clock = clock
        self.batch_size = batch_size

    @property
    def manager(self):
        if self._manager is None:
            self._manager = get_entitlement_manager()
        return self._manager

    def candidate_filter(self, now):
        raise NotImplementedError

    def process(self, user_id) -> bool:
        raise NotImplementedError

    def candidates(self, now=None) -> list[str]:
        now = now or self.clock()
        rows = (
            db.session.query(User.id)
            .filter(self.candidate_filter(now))
            .order_by(User.id)
            .limit(self.batch_size)
            .all()
        )
        return [row.id for row in rows]

    def run(self) -> SweepReport:
        report = SweepReport()
        for user_id in self.candidates():
            report.checked += 1
            try:
                if self.process(user_id):
                    report.changed += 1
            except Exception:
                db.session.rollback()
                report.failed += 1
                logger.error(
                    f"{self.name} failed for account",
                    exc_info=True,
                    extra={"sweep": self.name, "user_id": user_id},
                )
        logger.info(f"{self.name} finished", extra={"sweep": self.name, **report.to_dict()})
        return report


class ExpirationSweeper(Sweeper):
    """Accounts whose paid subscription or credit has already lapsed."""

    name = "expiration_sweep"

    def candidate_filter(self, now):
        plus_lapsed = or_(
            User.credit_plus_balance_end.is_(None),
            User.credit_plus_balance_end <= now,
        )
        paid_plus_lapsed = or_(
            User.tier_plus.is_(False),
            User.subscription_end_date.is_(None),
            User.subscription_end_date <= now,
        )
        return or_(
            and_(
                User.subscription_end_date <= now,
                or_(User.tier_plus.is_(True), User.tier_mini_plus.is_(True)),
            ),
            User.credit_plus_balance_end <= now,
            User.credit_mini_plus_balance_end <= now,
            and_(User.credit_mini_plus_banked_days > 0, plus_lapsed, paid_plus_lapsed),
        )

    def process(self, user_id) -> bool:
        return self.manager.handle_subscription_expiration(user_id).changed


class BillingResumeSweeper(Sweeper):
    """
    Paused accounts whose covering credit ends within the lookahead window.
    Banked Mini+ days that will start after the credit keep an account paused.
    """

    name = "billing_resume_sweep"

    def __init__(self, manager=None, *, clock=utcnow, batch_size: int = 500, lookahead_minutes: int = 60):
        super().__init__(manager, clock=clock, batch_size=batch_size)
        self.lookahead = timedelta(minutes=lookahead_minutes)

    def candidate_filter(self, now):
        horizon = now + self.lookahead
        return and_(
            User.paused_external_subscription_id.isnot(None),
            or_(User.credit_plus_balance_end.is_(None), User.credit_plus_balance_end <= horizon),
            or_(User.credit_mini_plus_balance_end.is_(None), User.credit_mini_plus_balance_end <= horizon),
            or_(
                User.credit_mini_plus_banked_days.is_(None),
                User.credit_mini_plus_banked_days == 0,
                and_(User.tier_plus.is_(True), User.subscription_end_date > now),
            ),
        )

    def process(self, user_id) -> bool:
        return self.manager.resume_billing(user_id)
