from entitlements.extensions import db
from entitlements.models.user import generate_id
from entitlements.utils.time import isoformat, utcnow


class GiftStatus:
    PENDING_REDEMPTION = "pending_redemption"
    REDEEMED = "redeemed"
    EXPIRED = "expired"


class GiftedSubscription(db.Model):
    """A purchasable, transferable, single-use entitlement grant."""

    __tablename__ = "gifted_subscriptions"

    id = db.Column(db.String(32), primary_key=True, default=generate_id)
    token = db.Column(db.String(64), nullable=False, unique=True, index=True)
    tier = db.Column(db.String(10), nullable=False)
    duration = db.Column(db.String(10), nullable=False)
    status = db.Column(
        db.String(20),
        nullable=False,
        default=GiftStatus.PENDING_REDEMPTION,
        index=True,
    )

    purchased_by_user_id = db.Column(
        db.String(32), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    redeemed_by_user_id = db.Column(
        db.String(32), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    redeemed_at = db.Column(db.DateTime, nullable=True)
    # Set while a redeemed gift still has to be applied to its redeemer
    application_failed_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    external_checkout_session_id = db.Column(db.String(255), nullable=True, unique=True)
    message = db.Column(db.Text, nullable=True)
    # "metadata" is reserved on declarative models
    meta = db.Column("metadata", db.JSON, nullable=True, default=dict)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    purchased_by = db.relationship("User", foreign_keys=[purchased_by_user_id])

    __table_args__ = (
        db.CheckConstraint("tier IN ('plus', 'mplus')", name="valid_gift_tier"),
        db.CheckConstraint("duration IN ('month', 'year')", name="valid_gift_duration"),
        db.CheckConstraint(
            "status IN ('pending_redemption', 'redeemed', 'expired')",
            name="valid_gift_status",
        ),
        db.Index("idx_gift_status_expires", "status", "expires_at"),
    )

    def to_dict(self, include_token=False):
        data = {
            "id": self.id,
            "tier": self.tier,
            "duration": self.duration,
            "status": self.status,
            "redeemedAt": isoformat(self.redeemed_at),
            "applicationPending": self.application_failed_at is not None,
            "expiresAt": isoformat(self.expires_at),
            "createdAt": isoformat(self.created_at),
            "message": self.message,
        }
        if include_token:
            data["token"] = self.token
        return data
