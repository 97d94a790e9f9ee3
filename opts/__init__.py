"""
Procurement Routing Engine
Flask Application Factory.

Usage:
    from opts import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_migrate import Migrate

from opts.config import config
from opts.models import db
from opts.middleware.logging_config import configure_logging

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
    # Instantiated so ProductionConfig can refuse to start without its env vars
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Models (registered on the metadata for migrations) ───────────────
    from opts.models import directory as _directory_models        # noqa: F401
    from opts.models import workflow as _workflow_models          # noqa: F401
    from opts.models import transaction as _transaction_models    # noqa: F401
    from opts.models import notification as _notification_models  # noqa: F401
    from opts.models import audit as _audit_models                # noqa: F401

    # ── CLI commands ─────────────────────────────────────────────────────
    from opts.cli import opts_cli
    app.cli.add_command(opts_cli)

    logger.info("Routing engine initialised (env=%s)", config_name)
    return app
