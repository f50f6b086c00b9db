"""
Webhook idempotency ledger.

A row is written only after the event's side effects committed, so a crash
in between leads to a redelivery rather than a lost event.
"""

import json
import logging
from datetime import timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from entitlements.extensions import db
from entitlements.models import WebhookEvent
from entitlements.utils.time import utcnow

logger = logging.getLogger(__name__)


def _plain(payload):
    # Provider SDK objects are dict subclasses with nested objects
    return json.loads(json.dumps(payload or {}, default=str))


def already_processed(provider: str, event_id: str) -> bool:
    return (
        db.session.query(WebhookEvent.id)
        .filter_by(provider=provider, event_id=event_id)
        .first()
        is not None
    )


def record_processed(
    provider: str,
    event_id: str,
    event_type: str,
    payload=None,
    user_id: str | None = None,
) -> bool:
    """Insert the ledger row. False if a concurrent delivery recorded it first."""
    record = WebhookEvent(
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        payload=_plain(payload),
        related_user_id=user_id,
        processed_at=utcnow(),
    )
    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.info(
            "Webhook event recorded concurrently",
            extra={"provider": provider, "event_id": event_id},
        )
        return False
    return True


def recent_events(provider: str | None = None, limit: int = 50) -> list[WebhookEvent]:
    query = WebhookEvent.query
    if provider:
        query = query.filter_by(provider=provider)
    return query.order_by(WebhookEvent.processed_at.desc()).limit(limit).all()


def events_for_user(user_id: str, limit: int = 50) -> list[WebhookEvent]:
    return (
        WebhookEvent.query
        .filter_by(related_user_id=user_id)
        .order_by(WebhookEvent.processed_at.desc())
        .limit(limit)
        .all()
    )


def purge_older_than(days: int) -> int:
    cutoff = utcnow() - timedelta(days=days)
    count = (
        WebhookEvent.query
        .filter(WebhookEvent.processed_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.session.commit()
    logger.info("Webhook ledger purged", extra={"count": count, "days": days})
    return count


def statistics() -> dict:
    rows = (
        db.session.query(WebhookEvent.provider, func.count(WebhookEvent.id))
        .group_by(WebhookEvent.provider)
        .all()
    )
    by_provider = {provider: count for provider, count in rows}
    return {"total": sum(by_provider.values()), "byProvider": by_provider}
