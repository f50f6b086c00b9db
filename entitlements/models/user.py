# user.py
import uuid

from entitlements.extensions import db
from entitlements.utils.time import isoformat, utcnow


def generate_id():
    return uuid.uuid4().hex


class User(db.Model):
    """
    Account record, reduced to the fields the entitlement engine owns.

    Billing-relevant columns (tiers, expiries, credit buckets, paused pointer,
    customer link) are written only by EntitlementManager. The
    subscription_status / has_*_access columns are a denormalized cache of the
    resolved status and are recomputed from the timestamp fields, never read
    as a source of truth.
    """

    __tablename__ = "users"

    id = db.Column(db.String(32), primary_key=True, default=generate_id)
    username = db.Column(db.String(128), nullable=False, unique=True, index=True)
    email = db.Column(db.String(255), nullable=True, index=True)
    role = db.Column(db.String(20), nullable=False, default="user")

    # Paid tier
    tier_plus = db.Column(db.Boolean, nullable=False, default=False)
    tier_mini_plus = db.Column(db.Boolean, nullable=False, default=False)
    subscription_end_date = db.Column(db.DateTime, nullable=True, index=True)
    subscription_platform = db.Column(db.String(20), nullable=True)
    previous_tier = db.Column(db.String(10), nullable=True)

    # Billing provider link
    external_customer_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    paused_external_subscription_id = db.Column(db.String(255), nullable=True, index=True)

    # Credit buckets
    credit_plus_balance_end = db.Column(db.DateTime, nullable=True, index=True)
    credit_mini_plus_balance_end = db.Column(db.DateTime, nullable=True, index=True)
    credit_mini_plus_banked_days = db.Column(db.Integer, nullable=False, default=0)

    # Denormalized cache
    subscription_status = db.Column(db.String(20), nullable=False, default="FREE")
    has_plus_access = db.Column(db.Boolean, nullable=False, default=False)
    has_mini_plus_access = db.Column(db.Boolean, nullable=False, default=False)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.CheckConstraint(
            "credit_mini_plus_banked_days >= 0",
            name="non_negative_banked_days",
        ),
        db.Index("idx_users_paused_credit", "paused_external_subscription_id", "credit_plus_balance_end"),
    )

    @property
    def is_admin(self):
        return self.role == "admin"

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "tierPlus": self.tier_plus,
            "tierMiniPlus": self.tier_mini_plus,
            "subscriptionEndDate": isoformat(self.subscription_end_date),
            "previousTier": self.previous_tier,
            "pausedExternalSubscriptionId": self.paused_external_subscription_id,
            "creditPlusBalanceEnd": isoformat(self.credit_plus_balance_end),
            "creditMiniPlusBalanceEnd": isoformat(self.credit_mini_plus_balance_end),
            "creditMiniPlusBankedDays": self.credit_mini_plus_banked_days,
            "subscriptionStatus": self.subscription_status,
        }

    def __repr__(self):
        return f"<User {self.id} {self.subscription_status}>"
