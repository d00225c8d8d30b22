import logging

from .base import BaseConfig, ConfigurationError

logger = logging.getLogger(__name__)


class ProductionConfig(BaseConfig):
    """
    Production configuration.
    """

    ENVIRONMENT = "production"
    DEBUG = False

    @classmethod
    def validate(cls):
        """Fail fast on settings production cannot run without."""
        missing = [
            name
            for name in ("SECRET_KEY", "JWT_SECRET_KEY", "STRIPE_SECRET_KEY", "ADMIN_SECRET")
            if not getattr(cls, name)
        ]
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")

        if "sqlite" in (cls.SQLALCHEMY_DATABASE_URI or "").lower():
            raise ConfigurationError("SQLite is not suitable for production")

        if not cls.STRIPE_WEBHOOK_SECRET:
            logger.warning(
                "STRIPE_WEBHOOK_SECRET not set, webhooks will be accepted unverified"
            )
