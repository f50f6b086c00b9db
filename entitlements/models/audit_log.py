from entitlements.extensions import db
from entitlements.utils.time import utcnow


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.String(32), nullable=True, index=True)
    action = db.Column(db.String(255), nullable=False)
    target_user_id = db.Column(db.String(32), nullable=True, index=True)
    meta = db.Column("metadata", db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime, default=utcnow)
