import logging

from dotenv import load_dotenv
from flask import Flask

from .audit import Auditor
from .config import Config
from .context import Services, request_context
from .extensions import db, migrate
from .ids import id_source_from_config
from .logging_setup import setup_logging
from .routes import register_routes
from .store import EphemeralStore, connect
from .telemetry import Telemetry

__all__ = ["create_app", "init_db", "request_context"]


def create_app(overrides: dict | None = None, redis_client=None):
    """
    Build the Flask app and the process-wide services.

    ``overrides`` is applied on top of the environment config; tests pass a
    ready-made ``redis_client`` instead of a URL.
    """
    load_dotenv()

    app = Flask(__name__)
    app.config.update(Config.as_dict())
    if overrides:
        app.config.update(overrides)
    app.config["SQLALCHEMY_DATABASE_URI"] = app.config["DATABASE_URL"]
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    setup_logging(app.config["LOG_LEVEL"], app.config["LOG_FILE"])

    db.init_app(app)
    migrate.init_app(app, db)

    if redis_client is None:
        redis_client = connect(app.config["REDIS_URL"], app.config["STORE_TIMEOUT_SECONDS"])
    telemetry = Telemetry()
    store = EphemeralStore(redis_client)
    ids = id_source_from_config(app.config, telemetry=telemetry)
    app.extensions["devicelink"] = Services(
        store=store,
        ids=ids,
        auditor=Auditor(store, ids, telemetry),
        telemetry=telemetry,
    )

    register_routes(app)
    logging.getLogger("devicelink").info(
        "WEB_STARTUP maintenance=%s subscriptions=%s",
        app.config["MAINTENANCE_MODE"],
        app.config["USE_SUBSCRIPTIONS"],
    )
    return app


def init_db(app) -> None:
    """Create any missing tables; migrations own schema changes after that."""
    from . import models  # noqa: F401

    with app.app_context():
        db.create_all()
