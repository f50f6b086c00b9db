from entitlements.models.audit_log import AuditLog
from entitlements.models.gifted_subscription import GiftedSubscription, GiftStatus
from entitlements.models.user import User
from entitlements.models.webhook_event import WebhookEvent

__all__ = ["AuditLog", "GiftedSubscription", "GiftStatus", "User", "WebhookEvent"]
