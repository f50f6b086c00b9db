import logging

from flask import jsonify

logger = logging.getLogger(__name__)


def register_routes(app):
    """Register all routes and blueprints"""
    from entitlements.routes.admin import admin_bp
    from entitlements.routes.gift import gift_bp
    from entitlements.routes.subscription import subscription_bp
    from entitlements.routes.webhooks import webhook_bp

    app.register_blueprint(gift_bp)
    app.register_blueprint(subscription_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(webhook_bp)

    @app.route("/health")
    def health():
        return jsonify({"status": "healthy", "service": app.config.get("APP_NAME")}), 200

    logger.info("Registered API blueprints")
