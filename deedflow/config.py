"""
Deed Workflow Service
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Local dev falls back to SQLite when DATABASE_URL is unset
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'deedflow_dev.db')}"

# Random per-process key for development; production requires SECRET_KEY
_DEV_SECRET = secrets.token_hex(32)


def database_url():
    """DATABASE_URL with Heroku-style ``postgres://`` rewritten for SQLAlchemy 2."""
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else None


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Rate-limit storage
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Days a user has to choose a delivery method before staff4 may decide.
    DELIVERY_ESCALATION_DAYS = int(os.getenv("DELIVERY_ESCALATION_DAYS", "7"))


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = database_url() or _SQLITE_DEV


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """PostgreSQL only.  Environment is read on instantiation."""

    # Stage transitions hold a row lock; bound how long a query may keep it.
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        self.SQLALCHEMY_DATABASE_URI = database_url()
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        self.SECRET_KEY = os.getenv("SECRET_KEY")
        if not self.SECRET_KEY:
            raise RuntimeError("SECRET_KEY environment variable must be set in production")
        # Must be set explicitly in production
        self.CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
