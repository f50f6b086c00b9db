# workers/base_tasks.py
from celery import Task
from celery.utils.log import get_task_logger
from flask import has_app_context

from entitlements.errors import ExternalProviderError, StaleWrite

logger = get_task_logger(__name__)


class BaseTask(Task):
    """
    Runs every task inside the Flask app context bound by celery_init_app.
    Provider outages and write conflicts are retried with backoff.
    """

    abstract = True

    autoretry_for = (ExternalProviderError, StaleWrite)
    retry_kwargs = {"max_retries": 5}
    retry_backoff = True
    retry_backoff_max = 300
    retry_jitter = True

    def __call__(self, *args, **kwargs):
        if has_app_context():
            return super().__call__(*args, **kwargs)

        flask_app = getattr(self.app, "flask_app", None)
        if flask_app is None:
            from entitlements import create_app

            flask_app = create_app()
        with flask_app.app_context():
            return super().__call__(*args, **kwargs)

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(
            "Task failed",
            extra={
                "task": self.name,
                "task_id": task_id,
                "error": str(exc),
            },
        )
