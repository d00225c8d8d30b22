"""
Flask application factory for the subscription reconciler.
"""

import logging
from typing import Optional

import sentry_sdk
from flask import Flask
from flask_cors import CORS
from sentry_sdk.integrations.flask import FlaskIntegration

from .billing.provider import StripeBillingClient
from .config import get_config
from .error_handlers import register_error_handlers
from .extensions import init_extensions
from .logging_config import setup_logging
from .middleware.request_id import REQUEST_ID_HEADER, init_request_id_middleware
from .observability.metrics import ReconcilerMetrics
from .routes import register_blueprints

logger = logging.getLogger(__name__)


def setup_sentry(app: Flask) -> None:
    """Initialize Sentry error tracking"""
    sentry_dsn = app.config.get("SENTRY_DSN")
    if not sentry_dsn:
        return

    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=app.config.get("SENTRY_TRACES_SAMPLE_RATE", 0.0),
        environment=app.config.get("ENVIRONMENT", "production"),
        send_default_pii=False,
    )
    logger.info("Sentry error tracking initialized")


def setup_cors(app: Flask) -> None:
    """Allow the frontend to call the account-facing API only."""
    frontend_url = app.config.get("FRONTEND_URL")
    if not frontend_url:
        logger.warning("FRONTEND_URL not set, CORS disabled")
        return

    CORS(
        app,
        resources={
            r"/api/*": {
                "origins": frontend_url,
                "supports_credentials": True,
                "allow_headers": ["Content-Type", "Authorization", REQUEST_ID_HEADER],
                "expose_headers": [REQUEST_ID_HEADER],
                "max_age": 86400,
            }
        },
    )


def setup_billing_provider(app: Flask) -> None:
    """Build the Stripe handle once per app; absent key means no provider."""
    if "billing_provider" in app.extensions:
        return
    if app.config.get("STRIPE_SECRET_KEY"):
        app.extensions["billing_provider"] = StripeBillingClient.from_config(app.config)
    else:
        logger.warning("STRIPE_SECRET_KEY not set, pulls and user actions are unavailable")
        app.extensions["billing_provider"] = None


def create_app(config_object=None, overrides: Optional[dict] = None) -> Flask:
    config_object = config_object or get_config()
    config_object.validate()

    app = Flask(__name__)
    app.config.from_object(config_object)
    if overrides:
        app.config.update(overrides)

    init_request_id_middleware(app)
    setup_logging(app)
    setup_sentry(app)

    init_extensions(app)
    setup_cors(app)

    app.extensions["reconciler_metrics"] = ReconcilerMetrics(
        enabled=app.config.get("METRICS_ENABLED", False)
    )
    setup_billing_provider(app)

    register_error_handlers(app)
    register_blueprints(app)

    logger.info(
        "Application created",
        extra={"environment": app.config.get("ENVIRONMENT")},
    )
    return app
