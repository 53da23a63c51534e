"""
Client Portal
Flask Application Factory.

Usage:
    from portal import create_app
    app = create_app()           # APP_ENV, else "development"
    app = create_app("testing")

Wiring order matters: logging before anything logs; the timing hook before
auth, so refused calls still carry a request id; the workflow event bus
before the scheduler, whose sweep jobs publish through it; rate limits after
the blueprints they decorate.
"""

import json
import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine, event as _sa_event

from portal.auth import init_auth
from portal.config import config
from portal.middleware.logging_config import configure_logging
from portal.middleware.rate_limiter import init_rate_limits
from portal.middleware.timing import init_request_timing
from portal.models import db
from portal.utils.errors import E, api_error

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """SQLite ignores FOREIGN KEY clauses (and the action cascade) unless asked."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: "development", "testing" or "production".
                     Defaults to the APP_ENV env var.

    Returns:
        Configured Flask application instance.
    """
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    app.config.setdefault("MAX_CONTENT_LENGTH", 1024 * 1024)
    os.makedirs(app.instance_path, exist_ok=True)

    configure_logging(app)
    _init_extensions(app)

    init_request_timing(app)
    init_auth(app)

    _init_schema(app)
    _register_blueprints(app)
    _register_error_handlers(app)

    _init_workflow_events(app)
    _init_scheduler(app)
    _register_cli(app)

    init_rate_limits(app, limiter)

    logger.info("Client portal ready (%s)", config_name)
    return app


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    origins = [o.strip() for o in (app.config.get("CORS_ORIGINS") or "").split(",") if o.strip()]
    if origins and origins != ["*"]:
        CORS(app, origins=origins)
    else:
        CORS(app)


def _init_schema(app):
    """Import every model module; create tables where migrations are not in charge."""
    from portal.models import notification, scheduling, workflow  # noqa: F401

    if not app.config.get("AUTO_CREATE_TABLES"):
        return
    with app.app_context():
        try:
            db.create_all()
        except Exception as exc:
            # The app still serves read-only probes; /health/live reports the database.
            logger.error("db.create_all() failed: %s", exc)


def _register_blueprints(app):
    from portal.blueprints.health_bp import health_bp
    from portal.blueprints.notification_bp import notification_bp
    from portal.blueprints.scheduler_bp import scheduler_bp
    from portal.blueprints.workflow_bp import workflow_bp

    for bp in (health_bp, workflow_bp, scheduler_bp, notification_bp):
        app.register_blueprint(bp)


def _register_error_handlers(app):

    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.METHOD_NOT_ALLOWED, f"{request.method} not allowed here")

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests",
                         details={"limit": str(e.description)})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled error on %s %s: %s", request.method, request.path, e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def _init_workflow_events(app):
    """Event bus on app.extensions with the in-process subscribers attached."""
    from portal.services.automation import handle_gate_satisfied
    from portal.services.notification import register_workflow_subscribers
    from portal.workflow.events import EXTENSION_KEY, EventBus, GateSatisfied

    bus = EventBus()
    register_workflow_subscribers(bus)
    bus.subscribe(GateSatisfied, handle_gate_satisfied)
    app.extensions[EXTENSION_KEY] = bus
    return bus


def _init_scheduler(app):
    from portal.services.scheduled_jobs import register_workflow_jobs
    from portal.services.scheduler_service import JobRegistry, SchedulerService

    registry = JobRegistry()
    register_workflow_jobs(registry)
    scheduler = SchedulerService(app, registry)
    if app.config.get("SCHEDULER_ENABLED"):
        scheduler.start(app.config.get("SCHEDULER_INTERVAL_SECONDS"))
    return scheduler


def _register_cli(app):

    @app.cli.command("run-automation-sweep")
    def run_automation_sweep_cmd():
        """Run the phase automation sweep once and print the report."""
        result = app.extensions["scheduler"].run_job("phase_automation_sweep", force=True)
        click.echo(json.dumps(result, indent=2, default=str))
