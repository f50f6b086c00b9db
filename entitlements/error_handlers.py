# entitlements/error_handlers.py
import logging
import traceback

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from entitlements.errors import EntitlementError, ExternalProviderError

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Register all error handlers for the application"""

    @app.errorhandler(EntitlementError)
    def handle_entitlement_error(e):
        if isinstance(e, ExternalProviderError):
            logger.error(
                f"Billing provider failure: {e.message} - Path: {request.path}",
                extra=e.context,
            )
        else:
            logger.warning(f"{e.code}: {e.message} - Path: {request.path}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        """
        Handles known HTTP errors (404, 401, 403, 429, etc.)
        """
        return jsonify({
            "error": e.name,
            "message": e.description,
            "status_code": e.code,
        }), e.code

    @app.errorhandler(Exception)
    def handle_exception(e):
        """
        Handles all unexpected server errors
        Prevents stack trace leakage in responses
        """
        logger.error("Unhandled Exception: %s", traceback.format_exc())
        return jsonify({
            "error": "Internal Server Error",
            "message": "Something went wrong. Please try again later.",
            "status_code": 500,
        }), 500

    return app
