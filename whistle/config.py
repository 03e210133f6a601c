"""
Whistle Core
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Secrets are never configured as literals.  The master key and the KDF salt
are named by a *source* string:

    env:WHISTLE_MASTER_KEY        read from an environment variable
    file:/run/secrets/master_key  read from a file (trailing newline stripped)
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'whistle_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # Encryption (AEAD, key derived once per process)
    ENCRYPTION_ALGORITHM = os.getenv("ENCRYPTION_ALGORITHM", "AES-256-GCM")
    ENCRYPTION_MASTER_KEY_SOURCE = os.getenv("ENCRYPTION_MASTER_KEY_SOURCE", "env:WHISTLE_MASTER_KEY")
    ENCRYPTION_KDF_SALT_SOURCE = os.getenv("ENCRYPTION_KDF_SALT_SOURCE", "env:WHISTLE_KDF_SALT")
    ENCRYPTION_KDF_ITERATIONS = int(os.getenv("ENCRYPTION_KDF_ITERATIONS", "600000"))

    # Uploads
    MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(200 * 1024 * 1024)))

    # Escalation thresholds (hours)
    ESCALATION_FIRST_HOURS = _env_float("ESCALATION_FIRST_HOURS", 2)
    ESCALATION_SECOND_HOURS = _env_float("ESCALATION_SECOND_HOURS", 5)
    ESCALATION_SPACING_HOURS = _env_float("ESCALATION_SPACING_HOURS", 24)
    ESCALATION_HARD_CEILING_HOURS = _env_float("ESCALATION_HARD_CEILING_HOURS", 48)
    ESCALATION_MAX_COUNT = int(os.getenv("ESCALATION_MAX_COUNT", "3"))
    ESCALATION_SWEEP_INTERVAL_MINUTES = _env_float("ESCALATION_SWEEP_INTERVAL_MINUTES", 30)

    # Background scheduler
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    SCHEDULER_POLL_SECONDS = _env_float("SCHEDULER_POLL_SECONDS", 30)

    # Notifications
    NOTIFICATION_DEDUPE_WINDOW_MINUTES = int(os.getenv("NOTIFICATION_DEDUPE_WINDOW_MINUTES", "60"))
    NOTIFICATION_SEND_TIMEOUT = _env_float("NOTIFICATION_SEND_TIMEOUT", 30)
    NOTIFICATION_SHUTDOWN_GRACE_SECONDS = _env_float("NOTIFICATION_SHUTDOWN_GRACE_SECONDS", 5)
    NOTIFICATION_MAX_WORKERS = int(os.getenv("NOTIFICATION_MAX_WORKERS", "6"))
    NOTIFICATION_RETENTION_DAYS = int(os.getenv("NOTIFICATION_RETENTION_DAYS", "30"))

    # Email / SMTP (optional, dev mode logs without sending)
    MAIL_SERVER = os.getenv("MAIL_SERVER")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = os.getenv("MAIL_USE_TLS", "true").lower() == "true"
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "noreply@whistle.local")
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
    ADMIN_DASHBOARD_URL = os.getenv("ADMIN_DASHBOARD_URL", "http://localhost:8080/admin")

    # SMS (Twilio REST API)
    TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
    TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")
    ADMIN_PHONE_NUMBER = os.getenv("ADMIN_PHONE_NUMBER")
    TWILIO_API_BASE = os.getenv("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a static pool; pool sizing options do not apply
    SQLALCHEMY_ENGINE_OPTIONS = {}
    # Keep key derivation fast in tests
    ENCRYPTION_KDF_ITERATIONS = 1000
    # Tests drive sweeps explicitly
    SCHEDULER_ENABLED = False
    MAIL_SERVER = None
    TWILIO_ACCOUNT_SID = None
    NOTIFICATION_SEND_TIMEOUT = 2
    NOTIFICATION_SHUTDOWN_GRACE_SECONDS = 1


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None

    # Override engine options with PostgreSQL statement timeout
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")
        if not os.getenv("ENCRYPTION_MASTER_KEY_SOURCE") or not os.getenv("ENCRYPTION_KDF_SALT_SOURCE"):
            raise RuntimeError(
                "ENCRYPTION_MASTER_KEY_SOURCE and ENCRYPTION_KDF_SALT_SOURCE must be set in production"
            )


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
