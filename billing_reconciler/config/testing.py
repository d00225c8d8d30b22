from .base import BaseConfig


class TestingConfig(BaseConfig):
    """
    Test configuration: in-memory SQLite, no Redis, no Stripe network access.
    """

    ENVIRONMENT = "testing"
    TESTING = True

    SECRET_KEY = "test-secret-key"
    JWT_SECRET_KEY = "test-jwt-secret-key-with-enough-length"

    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    REDIS_URL = None
    CELERY_BROKER_URL = "memory://"
    CELERY_RESULT_BACKEND = "cache+memory://"

    STRIPE_SECRET_KEY = None
    STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
    STRIPE_PRICE_TIER1 = "price_pro_monthly"
    STRIPE_PRICE_TIER2 = "price_creator_monthly"
    STRIPE_PRICE_TIER3 = "price_enterprise_monthly"

    ADMIN_SECRET = "test-admin-secret"
    SENTRY_DSN = None
    METRICS_ENABLED = True

    PULL_RETRY_DELAY = 0
    CREATE_TABLES_ON_START = True
