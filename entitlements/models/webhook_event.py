from entitlements.extensions import db
from entitlements.utils.time import isoformat, utcnow


class WebhookEvent(db.Model):
    """
    Idempotency ledger entry. A row exists only once the event's side effects
    have been committed.
    """

    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    provider = db.Column(db.String(32), nullable=False)
    event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(128), nullable=False)
    processed_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    payload = db.Column(db.JSON, nullable=True, default=dict)
    related_user_id = db.Column(db.String(32), nullable=True, index=True)

    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
    )

    def to_dict(self):
        return {
            "provider": self.provider,
            "eventId": self.event_id,
            "eventType": self.event_type,
            "processedAt": isoformat(self.processed_at),
            "relatedUserId": self.related_user_id,
        }
