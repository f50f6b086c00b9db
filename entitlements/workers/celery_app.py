# workers/celery_app.py
from celery import Celery
from kombu import Queue

from entitlements.workers.base_tasks import BaseTask
from entitlements.workers.celerybeat import build_beat_schedule

celery_app = Celery(
    "entitlements",
    task_cls=BaseTask,
    include=["entitlements.workers.subscription_tasks"],
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Reliability settings
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,

    # Routing
    task_default_queue="default",
    task_queues=(
        Queue("default"),
        Queue("sweeps"),
    ),
    task_routes={
        "entitlements.*_sweep": {"queue": "sweeps"},
        "entitlements.duplicate_customer_scan": {"queue": "sweeps"},
        "entitlements.daily_status_check": {"queue": "sweeps"},
    },

    # Time limits
    task_time_limit=300,
    task_soft_time_limit=240,
)


def celery_init_app(app) -> Celery:
    """Bind the Celery app to a Flask app's configuration."""
    celery_app.conf.update(
        broker_url=app.config.get("CELERY_BROKER_URL") or app.config["REDIS_URL"],
        result_backend=app.config.get("CELERY_RESULT_BACKEND") or app.config["REDIS_URL"],
        beat_schedule=build_beat_schedule(app.config),
        task_always_eager=app.config.get("TESTING", False),
        task_eager_propagates=app.config.get("TESTING", False),
    )
    celery_app.flask_app = app
    app.extensions["celery"] = celery_app
    return celery_app


from entitlements.workers import signals  # noqa: E402,F401
