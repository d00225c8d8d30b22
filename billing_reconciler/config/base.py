import json
import os


class ConfigurationError(Exception):
    """
    Raised when an invalid or unsupported configuration is requested.
    """
    pass


def env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def env_json(name: str, default=None):
    value = os.getenv(name)
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be valid JSON")


class BaseConfig:
    """
    Base configuration shared by all environments.
    """

    # Flask
    ENVIRONMENT = "base"
    DEBUG = False
    TESTING = False
    SECRET_KEY = os.getenv("SECRET_KEY")

    # Application
    APP_NAME = "Subscription Reconciler"
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_REQUESTS = env_bool("LOG_REQUESTS", False)

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///reconciler.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CREATE_TABLES_ON_START = env_bool("CREATE_TABLES_ON_START", False)

    # Redis / Celery
    REDIS_URL = os.getenv("REDIS_URL")
    CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL") or REDIS_URL or "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND") or REDIS_URL or "redis://localhost:6379/0"

    # Auth
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
    JWT_TOKEN_LOCATION = ["headers"]
    ADMIN_SECRET = os.getenv("ADMIN_SECRET")

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_WEBHOOK_TOLERANCE = env_int("STRIPE_WEBHOOK_TOLERANCE", 300)
    STRIPE_TIMEOUT = env_int("STRIPE_TIMEOUT", 30)
    STRIPE_MAX_RETRIES = env_int("STRIPE_MAX_RETRIES", 2)
    STRIPE_PRICE_TIER1 = os.getenv("STRIPE_PRICE_TIER1")
    STRIPE_PRICE_TIER2 = os.getenv("STRIPE_PRICE_TIER2")
    STRIPE_PRICE_TIER3 = os.getenv("STRIPE_PRICE_TIER3")

    # Plan resolution, e.g. PLAN_ALIASES='{"pro": "tier1"}',
    # PLAN_KEYWORDS='{"tier3": ["enterprise"], "tier1": ["pro"]}'
    PLAN_ALIASES = env_json("PLAN_ALIASES")
    PLAN_KEYWORDS = env_json("PLAN_KEYWORDS")

    # Reconciliation
    RECONCILE_MAX_CAS_RETRIES = env_int("RECONCILE_MAX_CAS_RETRIES", 3)
    PULL_MAX_RETRIES = env_int("PULL_MAX_RETRIES", 2)
    PULL_RETRY_DELAY = env_float("PULL_RETRY_DELAY", 0.5)
    SWEEP_LOCK_TTL = env_int("SWEEP_LOCK_TTL", 300)

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN")
    SENTRY_TRACES_SAMPLE_RATE = env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0)
    METRICS_ENABLED = env_bool("METRICS_ENABLED", False)

    @classmethod
    def validate(cls):
        """Hook for environment-specific checks."""
        return None
