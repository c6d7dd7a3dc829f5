"""
Delivery Tracker
Configuration classes, picked by APP_ENV in the app factory.

    app.config.from_object(config[os.getenv("APP_ENV", "development")])

Every setting can be overridden from the environment.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


def _env_float(name, default):
    return float(os.getenv(name, str(default)))


def _database_url(fallback=None):
    # SQLAlchemy 2.x only accepts the postgresql:// scheme
    url = os.getenv("DATABASE_URL", "")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url or fallback


class Config:
    """Settings shared by every environment."""

    DEBUG = False
    TESTING = False
    # Random per process unless provided; sessions do not survive a restart
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    # Empty or memory:// → in-process cache and rate-limit storage
    REDIS_URL = os.getenv("REDIS_URL", "")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Project health: days since last update before 'warning' / 'critical'
    HEALTH_WARNING_DAYS = _env_float("HEALTH_WARNING_DAYS", 3)
    HEALTH_CRITICAL_DAYS = _env_float("HEALTH_CRITICAL_DAYS", 7)

    # Conversion queue
    CONVERSION_TEAM = os.getenv("CONVERSION_TEAM", "conversion")
    DEFAULT_QUEUE_PRIORITY = _env_int("DEFAULT_QUEUE_PRIORITY", 3)

    SLOW_REQUEST_MS = _env_int("SLOW_REQUEST_MS", 1000)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        "sqlite:///" + os.path.join(basedir, "instance", "delivery_tracker_dev.db")
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """PostgreSQL only; refuses to start half-configured."""

    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "pool_size": _env_int("DB_POOL_SIZE", 5),
        "max_overflow": _env_int("DB_MAX_OVERFLOW", 10),
        "pool_timeout": 20,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [
            name for name, value in (
                ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
                ("SECRET_KEY", os.getenv("SECRET_KEY")),
            )
            if not value
        ]
        if missing:
            raise RuntimeError(f"Missing required environment variable(s) for production: {', '.join(missing)}")
        if self.HEALTH_WARNING_DAYS >= self.HEALTH_CRITICAL_DAYS:
            raise RuntimeError("HEALTH_WARNING_DAYS must be lower than HEALTH_CRITICAL_DAYS")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
