from datetime import timedelta

from celery.schedules import crontab


def build_beat_schedule(config) -> dict:
    return {
        "expiration-sweep": {
            "task": "entitlements.expiration_sweep",
            "schedule": timedelta(minutes=config.get("EXPIRATION_SWEEP_MINUTES", 60)),
        },
        "billing-resume-sweep": {
            "task": "entitlements.billing_resume_sweep",
            "schedule": timedelta(minutes=config.get("RESUME_SWEEP_MINUTES", 15)),
        },
        "gift-token-expiry-sweep": {
            "task": "entitlements.gift_token_expiry_sweep",
            "schedule": crontab(minute=5),
        },
        "daily-status-check": {
            "task": "entitlements.daily_status_check",
            "schedule": crontab(minute=0, hour=3),
        },
        "duplicate-customer-scan": {
            "task": "entitlements.duplicate_customer_scan",
            "schedule": crontab(minute=0, hour=4),
        },
        "webhook-ledger-purge": {
            "task": "entitlements.webhook_ledger_purge",
            "schedule": crontab(minute=30, hour=4),
        },
    }
