import os

from .base import BaseConfig, ConfigurationError
from .development import DevelopmentConfig
from .production import ProductionConfig
from .testing import TestingConfig


def get_config():
    """
    Resolve and return the correct configuration class
    based on the APP_ENV environment variable.

    Supported values:
    - development
    - testing
    - production
    """

    env = os.getenv("APP_ENV", "development").lower()

    if env == "development":
        return DevelopmentConfig

    if env == "testing":
        return TestingConfig

    if env == "production":
        return ProductionConfig

    raise ConfigurationError(f"Invalid APP_ENV value: {env}")


__all__ = [
    "BaseConfig",
    "ConfigurationError",
    "DevelopmentConfig",
    "ProductionConfig",
    "TestingConfig",
    "get_config",
]
