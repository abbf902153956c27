"""
ParkIt - Configuration
Defaults for the Flask application. Any key can be overridden with a
``PARKIT_``-prefixed environment variable, e.g. ``PARKIT_HOURLY_RATE=120``.
"""


class DefaultConfig:
    SECRET_KEY = "dev-key-change-me"
    DATABASE_URL = "sqlite:///parkit.db"
    LOG_LEVEL = "INFO"

    # Billing
    HOURLY_RATE = 100

    # Reservation rules
    CHECKIN_GRACE_BEFORE_MINUTES = 15
    PAST_TOLERANCE_SECONDS = 60
    ALLOCATION_ATTEMPTS = 3

    # Deliver notifications on a worker pool instead of the request thread
    NOTIFICATION_WORKERS = 0


class TestingConfig(DefaultConfig):
    TESTING = True
    DATABASE_URL = "sqlite://"
    LOG_LEVEL = "DEBUG"
