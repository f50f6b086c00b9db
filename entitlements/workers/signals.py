# workers/signals.py
import sentry_sdk
from celery.signals import setup_logging, task_failure, worker_process_init

from entitlements.logging_config import configure_logging_for_worker


@setup_logging.connect
def configure_worker_logging(**kwargs):
    configure_logging_for_worker()


@worker_process_init.connect
def init_worker_sentry(**kwargs):
    from entitlements.workers.celery_app import celery_app

    flask_app = getattr(celery_app, "flask_app", None)
    dsn = flask_app.config.get("SENTRY_DSN") if flask_app else None
    if dsn:
        sentry_sdk.init(dsn=dsn, environment=flask_app.config.get("ENVIRONMENT"))


@task_failure.connect
def capture_task_failure(sender=None, task_id=None, exception=None, **kwargs):
    if exception is not None:
        sentry_sdk.capture_exception(exception)
