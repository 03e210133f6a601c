"""
Whistle Core
Flask Application Factory.

Usage:
    from whistle import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import atexit
import importlib
import logging
import os

from flask import Flask
from flask_migrate import Migrate

from whistle.config import config
from whistle.core.exceptions import (
    EncryptionError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from whistle.middleware.logging_config import configure_logging
from whistle.models import db
from whistle.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def _init_pipeline(app):
    """Build the cipher, store, channels, router and monitor once per app."""
    from whistle.services.dashboard_service import DashboardChannel, DashboardHub
    from whistle.services.email_service import EmailChannel
    from whistle.services.escalation import EscalationMonitor
    from whistle.services.media_service import MediaService
    from whistle.services.notification import NotificationRouter
    from whistle.services.report_store import SqlReportStore
    from whistle.services.sms_service import SmsChannel
    from whistle.utils.crypto import FieldCipher

    # Fails closed: no key material, no app
    cipher = FieldCipher.from_config(app.config)
    store = SqlReportStore(cipher)
    hub = DashboardHub()
    router = NotificationRouter.from_config(app.config, [
        DashboardChannel(hub),
        EmailChannel.from_config(app.config),
        SmsChannel.from_config(app.config),
    ])
    monitor = EscalationMonitor.from_config(app.config, store, router)

    app.extensions["field_cipher"] = cipher
    app.extensions["report_store"] = store
    app.extensions["media_service"] = MediaService(cipher.blob_cipher())
    app.extensions["dashboard_hub"] = hub
    app.extensions["notification_router"] = router
    app.extensions["escalation_monitor"] = monitor


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiate so environment checks in __init__ run
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Import all models so Alembic can detect them ─────────────────────
    from whistle.models import report as _report_models              # noqa: F401
    from whistle.models import notification as _notification_models  # noqa: F401
    from whistle.models import scheduling as _scheduling_models      # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Encryption + escalation pipeline ─────────────────────────────────
    _init_pipeline(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from whistle.blueprints.escalation_bp import escalation_bp

    app.register_blueprint(escalation_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("escalation-sweep")
    def escalation_sweep_cmd():
        """Run one escalation sweep and log the outcome."""
        result = app.extensions["escalation_monitor"].run_sweep()
        logger.info("Escalation sweep: %s", result.to_dict())

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Whistle Core"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(NotFoundError)
    def _not_found(e):
        return api_error(E.NOT_FOUND, str(e))

    @app.errorhandler(ValidationError)
    def _validation(e):
        return api_error(E.VALIDATION_INVALID, str(e), details=e.details)

    @app.errorhandler(StoreUnavailableError)
    def _store_unavailable(e):
        logger.error("Store unavailable: %s", e)
        return api_error(E.STORE_UNAVAILABLE, "Report store unavailable, retry later")

    @app.errorhandler(EncryptionError)
    def _encryption_failed(e):
        logger.error("Encryption failed: %s", e)
        return api_error(E.ENCRYPTION, EncryptionError.public_message)

    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("whistle.services.scheduled_jobs")  # registers @register_job handlers
    from whistle.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)
    if app.config.get("SCHEDULER_ENABLED"):
        _SchedulerSvc.start()

    # ── Shutdown: stop the timer, give in-flight sends a grace period ────
    router = app.extensions["notification_router"]

    def _shutdown():
        _SchedulerSvc.stop()
        router.shutdown()

    atexit.register(_shutdown)

    return app
