from celery.utils.log import get_task_logger
from flask import current_app
from sqlalchemy import or_

from entitlements.billing.customers import cleanup_duplicate_customers
from entitlements.billing.gift_tokens import get_gift_token_store
from entitlements.billing.state_machine import get_entitlement_manager
from entitlements.billing.sweepers import BillingResumeSweeper, ExpirationSweeper
from entitlements.errors import SweepAlreadyRunning
from entitlements.extensions import db
from entitlements.models import User
from entitlements.utils.redis_lock import redis_lock
from entitlements.webhooks import ledger
from entitlements.workers.celery_app import celery_app

logger = get_task_logger(__name__)


# ---- per-account jobs ----

@celery_app.task(name="entitlements.check_expiring")
def check_expiring(user_id):
    outcome = get_entitlement_manager().handle_subscription_expiration(user_id)
    return {"userId": user_id, "changed": outcome.changed, "status": outcome.status.value}


@celery_app.task(name="entitlements.daily_check")
def daily_check(user_id):
    manager = get_entitlement_manager()
    outcome = manager.handle_subscription_expiration(user_id)
    status = manager.update_subscription_status(user_id)
    return {"userId": user_id, "changed": outcome.changed, "status": status.value}


@celery_app.task(name="entitlements.resume_billing")
def resume_billing(user_id):
    return {"userId": user_id, "resumed": get_entitlement_manager().resume_billing(user_id)}


@celery_app.task(name="entitlements.cleanup_customers")
def cleanup_customers(user_id):
    return cleanup_duplicate_customers(user_id).to_dict()


# ---- periodic sweeps ----

def run_single(lock_name, func):
    """Run func under the sweep lock. None when another worker holds it."""
    ttl = current_app.config.get("SWEEP_LOCK_TTL_SECONDS", 900)
    try:
        with redis_lock(lock_name, ttl):
            return func()
    except SweepAlreadyRunning:
        logger.info("Sweep already running elsewhere, skipping", extra={"lock": lock_name})
        return None


def _enqueue(task, user_ids):
    for user_id in user_ids:
        task.delay(user_id)
    return len(user_ids)


def _batch_size():
    return current_app.config.get("SWEEP_BATCH_SIZE", 500)


@celery_app.task(name="entitlements.expiration_sweep")
def expiration_sweep():
    sweeper = ExpirationSweeper(batch_size=_batch_size())
    return run_single("sweep:expiration", lambda: _enqueue(check_expiring, sweeper.candidates()))


@celery_app.task(name="entitlements.billing_resume_sweep")
def billing_resume_sweep():
    sweeper = BillingResumeSweeper(
        batch_size=_batch_size(),
        lookahead_minutes=current_app.config.get("RESUME_LOOKAHEAD_MINUTES", 60),
    )
    return run_single("sweep:billing_resume", lambda: _enqueue(resume_billing, sweeper.candidates()))


@celery_app.task(name="entitlements.gift_token_expiry_sweep")
def gift_token_expiry_sweep():
    return run_single("sweep:gift_expiry", lambda: get_gift_token_store().sweep_expired())


def _entitled_account_ids():
    rows = (
        db.session.query(User.id)
        .filter(
            or_(
                User.subscription_status != "FREE",
                User.tier_plus.is_(True),
                User.tier_mini_plus.is_(True),
                User.credit_plus_balance_end.isnot(None),
                User.credit_mini_plus_balance_end.isnot(None),
                User.credit_mini_plus_banked_days > 0,
            )
        )
        .all()
    )
    return [row.id for row in rows]


@celery_app.task(name="entitlements.daily_status_check")
def daily_status_check():
    return run_single("sweep:daily_check", lambda: _enqueue(daily_check, _entitled_account_ids()))


def _customer_linked_ids():
    rows = (
        db.session.query(User.id)
        .filter(User.external_customer_id.isnot(None), User.email.isnot(None))
        .all()
    )
    return [row.id for row in rows]


@celery_app.task(name="entitlements.duplicate_customer_scan")
def duplicate_customer_scan():
    return run_single("sweep:duplicate_customers", lambda: _enqueue(cleanup_customers, _customer_linked_ids()))


@celery_app.task(name="entitlements.webhook_ledger_purge")
def webhook_ledger_purge():
    days = current_app.config.get("WEBHOOK_EVENT_RETENTION_DAYS", 30)
    return run_single("sweep:webhook_purge", lambda: ledger.purge_older_than(days))
