"""
Flask extensions initialization module.
Handles initialization and configuration of all Flask extensions.
"""

import logging

import redis
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

# Initialize extensions
db = SQLAlchemy()
jwt = JWTManager()
migrate = Migrate()
limiter = Limiter(key_func=get_remote_address)
redis_client = None

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize all Flask extensions."""

    init_redis(app)

    db.init_app(app)
    logger.info("SQLAlchemy initialized")

    migrate.init_app(app, db)
    logger.info("Flask-Migrate initialized")

    jwt.init_app(app)
    setup_jwt_callbacks()
    logger.info("JWT Manager initialized")

    limiter.init_app(app)
    logger.info("Rate limiter initialized")

    return app


def init_redis(app):
    """Initialize Redis connection used for sweeper locks."""
    global redis_client

    if app.config.get("TESTING"):
        redis_client = None
        return

    try:
        redis_client = redis.from_url(
            app.config.get("REDIS_URL", "redis://localhost:6379/0"),
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        redis_client.ping()
        logger.info("Redis initialized successfully")

    except redis.ConnectionError as e:
        logger.error(f"Failed to connect to Redis: {e}")
        if app.config.get("ENVIRONMENT") == "production":
            raise
        logger.warning("Sweeper single-runner locks are disabled without Redis")
        redis_client = None


def setup_jwt_callbacks():
    """Setup JWT callbacks for token validation and error handling."""
    from flask import jsonify

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({
            "error": "token_expired",
            "message": "The token has expired. Please refresh your token.",
        }), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        return jsonify({
            "error": "invalid_token",
            "message": "Invalid token. Please provide a valid authentication token.",
        }), 401

    @jwt.unauthorized_loader
    def missing_token_callback(error):
        return jsonify({
            "error": "authorization_required",
            "message": "Authentication required. Please provide a valid token.",
        }), 401


def get_redis_client():
    """Get Redis client instance with health check."""
    if redis_client:
        try:
            redis_client.ping()
            return redis_client
        except redis.RedisError:
            logger.warning("Redis connection lost")
            return None
    return None


__all__ = [
    "db", "jwt", "migrate", "limiter", "redis_client",
    "init_extensions", "get_redis_client",
]
