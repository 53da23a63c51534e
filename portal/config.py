"""
Client Portal
Configuration classes for the app factory.

    app.config.from_object(config[os.getenv("APP_ENV", "development")]())

Every setting can be overridden from the environment.  Classes are
instantiated (not passed as types) so ``__init__`` can refuse to start with
a broken setup.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'client_portal_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _env_bool(name, default):
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes", "on")


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


def _database_url(fallback=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme SQLAlchemy 2 rejects rewritten."""
    url = os.getenv("DATABASE_URL", "")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url or fallback


class Config:
    """Shared defaults."""

    # Stable in production (checked below); throwaway per process elsewhere
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    # ── Storage ──────────────────────────────────────────────────────────
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}
    # CREATE TABLE IF NOT EXISTS at startup; turn off once Alembic owns the schema
    AUTO_CREATE_TABLES = _env_bool("AUTO_CREATE_TABLES", True)

    # ── HTTP surface ─────────────────────────────────────────────────────
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    REDIS_URL = os.getenv("REDIS_URL", "memory://")   # rate-limit storage
    SLOW_REQUEST_MS = _env_int("SLOW_REQUEST_MS", 1000)
    API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "true")
    # "<key>:<role>[:<actor_id>]", comma-separated
    API_KEYS = os.getenv("API_KEYS", "")

    # ── Phase workflow defaults for new projects ─────────────────────────
    WORKFLOW_AUTO_ADVANCE_DEFAULT = _env_bool("WORKFLOW_AUTO_ADVANCE_DEFAULT", False)
    WORKFLOW_STUCK_NOTIFICATIONS_DEFAULT = _env_bool("WORKFLOW_STUCK_NOTIFICATIONS_DEFAULT", True)
    WORKFLOW_STUCK_THRESHOLD_DAYS = _env_int("WORKFLOW_STUCK_THRESHOLD_DAYS", 7)
    # Client action reminders; 0 disables them
    WORKFLOW_ACTION_REMINDER_DAYS = _env_int("WORKFLOW_ACTION_REMINDER_DAYS", 3)
    WORKFLOW_ACTION_REMINDER_REPEAT_DAYS = _env_int("WORKFLOW_ACTION_REMINDER_REPEAT_DAYS", 2)

    # ── Background scheduler (automation sweep, cleanup) ─────────────────
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", False)
    SCHEDULER_INTERVAL_SECONDS = _env_int("SCHEDULER_INTERVAL_SECONDS", 300)

    def __init__(self):
        problems = []
        if self.WORKFLOW_STUCK_THRESHOLD_DAYS < 1:
            problems.append("WORKFLOW_STUCK_THRESHOLD_DAYS must be at least 1")
        if self.WORKFLOW_ACTION_REMINDER_DAYS < 0:
            problems.append("WORKFLOW_ACTION_REMINDER_DAYS must not be negative")
        if self.WORKFLOW_ACTION_REMINDER_REPEAT_DAYS < 1:
            problems.append("WORKFLOW_ACTION_REMINDER_REPEAT_DAYS must be at least 1")
        if self.SCHEDULER_INTERVAL_SECONDS < 1:
            problems.append("SCHEDULER_INTERVAL_SECONDS must be at least 1")
        if problems:
            raise RuntimeError("Invalid configuration: " + "; ".join(problems))


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)
    # Callers identify via X-Portal-Role / X-Portal-User unless switched on
    API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "false")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    API_AUTH_ENABLED = "false"
    RATELIMIT_ENABLED = False
    SCHEDULER_ENABLED = False


class ProductionConfig(Config):
    """PostgreSQL, API keys and the background sweep on."""

    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    API_AUTH_ENABLED = "true"
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", True)
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        # Postgres-side cap so a stuck sweep query cannot hold ledger row locks
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        super().__init__()
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL must be set in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
