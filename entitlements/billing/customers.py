"""
Duplicate billing customer reconciliation.

Racing customer creation can leave several provider customers for one
account. They are tolerated until this runs, then merged onto one canonical
customer: the stored link if it is still live, else the oldest customer tagged
with the account id. Untagged customers that merely share the email are left
alone.
"""

import logging
from dataclasses import dataclass, field

from entitlements.billing.provider import ACTIVE_SUBSCRIPTION_STATUSES
from entitlements.billing.state_machine import get_entitlement_manager
from entitlements.errors import AccountNotFound
from entitlements.extensions import db
from entitlements.models import User

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    user_id: str
    canonical_customer_id: str | None = None
    merged_customer_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def had_duplicates(self) -> bool:
        return bool(self.merged_customer_ids or self.errors)

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "canonicalCustomerId": self.canonical_customer_id,
            "mergedCustomerIds": self.merged_customer_ids,
            "errors": self.errors,
        }


def _belongs_to(customer, user: User) -> bool:
    if customer.get("deleted"):
        return False
    if customer.get("id") == user.external_customer_id:
        return True
    # emails are not unique per account, only the tag proves ownership
    return (customer.get("metadata") or {}).get("userId") == user.id


def choose_canonical(customers: list, user: User):
    if not customers:
        return None
    for customer in customers:
        if customer["id"] == user.external_customer_id:
            return customer
    tagged = [c for c in customers if (c.get("metadata") or {}).get("userId") == user.id]
    pool = tagged or customers
    return min(pool, key=lambda c: c.get("created") or 0)


def cleanup_duplicate_customers(user_id: str, *, manager=None) -> MergeResult:
    manager = manager or get_entitlement_manager()
    provider = manager.provider

    user = db.session.get(User, user_id)
    if user is None:
        raise AccountNotFound(user_id=user_id)

    result = MergeResult(user_id=user_id, canonical_customer_id=user.external_customer_id)
    if not user.email:
        return result

    customers = [c for c in provider.list_customers_by_email(user.email) if _belongs_to(c, user)]
    canonical = choose_canonical(customers, user)
    if canonical is None:
        return result

    result.canonical_customer_id = canonical["id"]

    for customer in customers:
        if customer["id"] == canonical["id"]:
            continue
        live = [
            s for s in provider.list_subscriptions(customer["id"])
            if s.get("status") in ACTIVE_SUBSCRIPTION_STATUSES
        ]
        if live:
            result.errors.append(
                f"Customer {customer['id']} has {len(live)} active subscription(s), merge manually"
            )
            continue
        provider.mark_customer_merged(customer["id"], canonical["id"])
        result.merged_customer_ids.append(customer["id"])

    manager.link_customer(user_id, canonical["id"])

    if result.had_duplicates:
        logger.warning(
            "Duplicate billing customers reconciled",
            extra={
                "user_id": user_id,
                "canonical_customer_id": canonical["id"],
                "merged": result.merged_customer_ids,
                "errors": result.errors,
            },
        )
    return result
