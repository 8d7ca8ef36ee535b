"""
Per-request bundle handed to every mutating operation.

The process-wide handles (stores, id source, auditor, telemetry) are built
once by ``create_app`` and live in ``app.extensions["devicelink"]``; a
RequestContext pairs them with the caller's identity and address.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Mapping

from flask import current_app

from .errors import MaintenanceMode, store_errors
from .extensions import db
from .ids import id_to_str


@dataclass(frozen=True)
class Services:
    store: Any
    ids: Any
    auditor: Any
    telemetry: Any


@dataclass(frozen=True)
class RequestContext:
    config: Mapping[str, Any]
    ip: str
    user: Any
    ids: Any
    db: Any
    store: Any
    auditor: Any
    telemetry: Any
    log: logging.Logger

    @property
    def actor(self) -> str:
        if self.user is None:
            return ""
        return id_to_str(self.user.id)

    def with_user(self, user) -> "RequestContext":
        return replace(self, user=user)

    def ensure_writable(self) -> None:
        if self.config.get("MAINTENANCE_MODE"):
            raise MaintenanceMode()

    def audit(self, key: str, changes: Mapping) -> list[int]:
        return self.auditor.record(key, changes, ip=self.ip, actor=self.actor)

    def commit(self) -> None:
        with self.transaction():
            pass

    @contextmanager
    def transaction(self):
        """Commit the session on success, roll back and re-raise on failure."""
        try:
            with store_errors():
                yield self.db
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise


def request_context(ip: str = "", user=None, app=None) -> RequestContext:
    app = app or current_app
    services: Services = app.extensions["devicelink"]
    return RequestContext(
        config=app.config,
        ip=ip or "",
        user=user,
        ids=services.ids,
        db=db.session,
        store=services.store,
        auditor=services.auditor,
        telemetry=services.telemetry,
        log=logging.getLogger("devicelink.request"),
    )
