"""
Flask extensions initialization module.
"""

import logging

import redis
from flask_jwt_extended import JWTManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
jwt = JWTManager()
migrate = Migrate()
redis_client = None

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize all Flask extensions."""
    init_redis(app)

    db.init_app(app)
    migrate.init_app(app, db)
    logger.info("SQLAlchemy and Flask-Migrate initialized")

    jwt.init_app(app)
    setup_jwt_callbacks()
    logger.info("JWT Manager initialized")

    if app.config.get("CREATE_TABLES_ON_START", False):
        from . import models  # noqa: F401

        with app.app_context():
            db.create_all()
            logger.info("Database tables created/verified")

    return app


def init_redis(app):
    """Connect to Redis when REDIS_URL is configured; otherwise run without it."""
    global redis_client

    redis_url = app.config.get("REDIS_URL")
    if not redis_url:
        redis_client = None
        logger.info("REDIS_URL not configured, sweep lock falls back to a process-local lock")
        return

    try:
        redis_client = redis.from_url(
            redis_url,
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
        redis_client = None


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


def setup_jwt_callbacks():
    """JSON error bodies for JWT failures."""
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


__all__ = ["db", "jwt", "migrate", "redis_client", "init_extensions", "get_redis_client"]
