"""Settings shared by every environment."""
import os
from datetime import timedelta

class BaseConfig:
    """Base configuration."""

    SECRET_KEY = os.getenv('SECRET_KEY') or 'dev-secret-key-change-in-production'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False

    # JWT Configuration
    JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY') or 'jwt-secret-key-change-in-production'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=2)
    JWT_ALGORITHM = 'HS256'

    # CORS
    CORS_ORIGINS = ["http://localhost:*", "http://127.0.0.1:*"]

    # Rate Limiting
    RATELIMIT_STORAGE_URI = os.getenv('REDIS_URL') or 'memory://'

    # Key-value store for device fingerprints and the submission ledger
    REDIS_URL = os.getenv('REDIS_URL')
    DEVICE_COOKIE_NAME = 'tpo_device'
    DEVICE_COOKIE_MAX_AGE = 60 * 60 * 24 * 365  # one year

    # Session codes
    SESSION_CODE_LENGTH = 8
    SESSION_MIN_DURATION_MINUTES = 10
    SESSION_MAX_DURATION_MINUTES = 480
    SESSION_DEFAULT_DURATION_MINUTES = 60

    # Location sampling
    LOCATION_SAMPLE_COUNT = 3
    LOCATION_SAMPLE_INTERVAL_MS = 800
    LOCATION_TIMEOUT_MS = 5000

    # Geofence applied when a session has none (None = capability check only)
    DEFAULT_GEOFENCE = None

    # Shown in out-of-range location messages
    GEOFENCE_LABEL = 'the campus'

    # Reference point used by the location-aware export
    CAMPUS_REFERENCE_POINT = (19.1231, 72.8361)
    CAMPUS_RADIUS_METERS = 200

    # Verification flow
    FORM_SETTLE_DELAY_SECONDS = 0.5
    VERIFICATION_TOKEN_EXPIRY = 600  # seconds

    # Logging
    LOG_LEVEL = 'INFO'
    LOG_FILE = 'logs/app.log'
