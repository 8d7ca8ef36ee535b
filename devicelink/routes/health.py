import logging

from flask import Blueprint, current_app, jsonify
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from ..errors import CoreError
from ..extensions import db

bp = Blueprint("health", __name__)
log = logging.getLogger(__name__)

REQUIRED_TABLES = {"users", "accounts", "devices", "campaigns", "payments", "subscriptions"}


@bp.get("/health")
def health():
    return jsonify(status="ok", maintenance=bool(current_app.config.get("MAINTENANCE_MODE")))


@bp.get("/health/deps")
def health_deps():
    out = {
        "db_ok": False,
        "redis_ok": False,
        "required_tables_present": False,
        "missing_tables": [],
    }

    # DB ping + table check
    try:
        db.session.execute(text("SELECT 1"))
        tables = set(inspect(db.engine).get_table_names())
        missing = sorted(REQUIRED_TABLES - tables)
        out["missing_tables"] = missing
        out["db_ok"] = True
        out["required_tables_present"] = not missing
    except SQLAlchemyError as e:
        log.warning("health: database check failed: %s", e)
        out["db_error"] = type(e).__name__

    try:
        out["redis_ok"] = current_app.extensions["devicelink"].store.ping()
    except CoreError as e:
        log.warning("health: redis check failed: %s", e)
        out["redis_error"] = e.code

    return jsonify(out), (200 if (out["db_ok"] and out["redis_ok"]) else 503)
