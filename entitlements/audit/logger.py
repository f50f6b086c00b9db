import logging

from entitlements.extensions import db
from entitlements.models import AuditLog

logger = logging.getLogger("audit")


def log_action(action: str, actor_id=None, target_user_id=None, meta=None):
    """Record a privileged action on the audit logger and in the audit table."""
    meta = meta or {}
    logger.info(
        f"[AUDIT] {action} actor={actor_id} target={target_user_id}",
        extra={"action": action, "actor_id": actor_id, "target_user_id": target_user_id, **meta},
    )
    db.session.add(
        AuditLog(
            action=action,
            actor_id=actor_id,
            target_user_id=target_user_id,
            meta=meta,
        )
    )
    db.session.commit()
