"""Testing configuration."""
from datetime import timedelta

from .base import BaseConfig

class TestingConfig(BaseConfig):
    """Testing configuration class."""

    DEBUG = False
    TESTING = True
    SECRET_KEY = 'test-secret-key-with-enough-length-for-hs256'

    # Database (in-memory SQLite for testing)
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'

    # Always use the in-memory store
    REDIS_URL = None

    JWT_SECRET_KEY = 'test-jwt-secret-key-with-enough-length'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(minutes=5)

    # Rate Limiting (disabled for testing)
    RATELIMIT_ENABLED = False

    # No waiting between location samples or before the form is shown
    LOCATION_SAMPLE_INTERVAL_MS = 0
    FORM_SETTLE_DELAY_SECONDS = 0

    LOG_LEVEL = 'WARNING'
