"""
Flask application factory for the entitlement and billing reconciliation
service. Fails fast on configuration errors.
"""

import logging

import sentry_sdk
from flask import Flask
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.flask import FlaskIntegration

from entitlements.config import get_config
from entitlements.error_handlers import register_error_handlers
from entitlements.extensions import init_extensions
from entitlements.logging_config import setup_logging
from entitlements.middleware.request_id import init_request_id_middleware

logger = logging.getLogger(__name__)


def setup_sentry(app: Flask) -> None:
    dsn = app.config.get("SENTRY_DSN")
    if not dsn:
        return
    sentry_sdk.init(
        dsn=dsn,
        environment=app.config.get("ENVIRONMENT"),
        integrations=[FlaskIntegration(), CeleryIntegration()],
        traces_sample_rate=0.0,
        send_default_pii=False,
    )
    logger.info("Sentry initialized")


def create_app(config_name: str | None = None) -> Flask:
    config = get_config(config_name).validate()

    app = Flask(__name__)
    app.config.from_object(config)

    setup_logging(app)
    setup_sentry(app)

    init_extensions(app)
    init_request_id_middleware(app)
    register_error_handlers(app)

    # Models must be imported before create_all / migrations see the metadata
    from entitlements import models  # noqa: F401
    from entitlements.routes import register_routes
    from entitlements.workers.celery_app import celery_init_app

    register_routes(app)
    celery_init_app(app)

    logger.info(f"{app.config['APP_NAME']} started", extra={"environment": config.ENVIRONMENT})
    return app
