"""Application factory for the billing engine."""

from __future__ import annotations

import logging

from dotenv import load_dotenv
from flask import Flask
from sqlalchemy import event

from cli import billing_cli
from config import (
    emit_sqlite_begin,
    enable_sqlite_fks,
    enable_sqlite_transactions,
    load_config,
)
from extensions import db

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app():
    """Create and configure the Flask application."""
    app_cfg, billing_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["APP_CONFIG"] = app_cfg
    app.config["BILLING_CONFIG"] = billing_cfg
    # Replaced by a FixedClock in tests and back-dated runs.
    app.config["BILLING_CLOCK"] = None

    db.init_app(app)

    # SQLite: foreign keys on, and explicit BEGIN so savepoints and
    # multi-row writes behave as one transaction.
    if db_uri.startswith("sqlite"):
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)
            event.listen(db.engine, "connect", enable_sqlite_transactions)
            event.listen(db.engine, "begin", emit_sqlite_begin)

    with app.app_context():
        db.create_all()

    app.cli.add_command(billing_cli)

    logger.info("%s ready (%s)", app_cfg.name, db_uri.split("://", 1)[0])
    return app
