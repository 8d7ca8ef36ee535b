"""
Append-only audit log of field-level mutations.

Every mutating operation hands a delta ``{field: (from, to)}`` for one
entity key to ``Auditor.record``. Each changed field gets its own audit id
and an ``audit:{key}:item:{id}`` hash, and the id is pushed onto the
``audit:{key}`` list (newest at the head). One delta is one pipeline.

Audit writes are best-effort: failures are logged and counted in
telemetry, never raised into the mutation that produced them.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping

from redis import exceptions as redis_exc

from .errors import CoreError
from .ids import id_from_str, id_to_str

log = logging.getLogger(__name__)

REDACTED = "[redacted]"
REDACTED_FIELDS = frozenset({"secret", "email_confirmation", "access_token", "refresh_token"})


def rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def render(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return rfc3339(value)
    return str(value)


def render_field(field: str, value) -> str:
    text = render(value)
    if text and field in REDACTED_FIELDS:
        return REDACTED
    return text


def snapshot(obj, fields: Iterable[str]) -> dict:
    return {f: getattr(obj, f) for f in fields}


def diff(before: Mapping, after: Mapping) -> dict:
    """Fields whose rendered value changed, as ``{field: (from, to)}``."""
    changes = {}
    for field, new in after.items():
        old = before.get(field)
        if render(old) != render(new):
            changes[field] = (old, new)
    return changes


def created(after: Mapping) -> dict:
    return diff({}, after)


def deleted(before: Mapping) -> dict:
    return {field: (old, None) for field, old in before.items() if render(old) != ""}


def list_key(key: str) -> str:
    return f"audit:{key}"


def item_key(key: str, audit_id: str) -> str:
    return f"audit:{key}:item:{audit_id}"


@dataclass(frozen=True)
class AuditEntry:
    id: int
    key: str
    field: str
    from_value: str
    to_value: str
    ip: str
    user: str
    timestamp: str


class Auditor:
    def __init__(self, store, ids, telemetry):
        self.store = store
        self.ids = ids
        self.telemetry = telemetry

    def record(self, key: str, changes: Mapping, ip: str = "", actor: str = "") -> list[int]:
        """Append one entry per changed field. Returns the audit ids written."""
        if not changes:
            return []
        try:
            return self._write(key, changes, ip, actor)
        except (CoreError, redis_exc.RedisError) as e:
            log.error("audit write failed for %s (%d fields): %s", key, len(changes), e)
            self.telemetry.incr("audit.failed")
            return []

    def _write(self, key: str, changes: Mapping, ip: str, actor: str) -> list[int]:
        timestamp = rfc3339(datetime.now(timezone.utc))
        audit_ids = [self.ids.next() for _ in changes]
        pipe = self.store.batch()
        for audit_id, (field, (old, new)) in zip(audit_ids, changes.items()):
            rendered_id = id_to_str(audit_id)
            pipe.hset(
                item_key(key, rendered_id),
                mapping={
                    "field": field,
                    "from": render_field(field, old),
                    "to": render_field(field, new),
                    "timestamp": timestamp,
                    "ip": ip or "",
                    "user": actor or "",
                },
            )
            pipe.lpush(list_key(key), rendered_id)
        replies = self.store.flush(pipe, strict=False)
        failed = [r for r in replies if isinstance(r, Exception)]
        if failed:
            log.error("audit batch for %s had %d failed writes: %s", key, len(failed), failed[0])
            self.telemetry.incr("audit.failed", len(failed))
        self.telemetry.incr("audit.entries", len(audit_ids))
        return audit_ids

    def entries(self, key: str, count: int = 20) -> list[AuditEntry]:
        """Entries for ``key``, newest first."""
        rendered_ids = self.store.lrange(list_key(key), 0, count - 1)
        pipe = self.store.batch()
        for rendered_id in rendered_ids:
            pipe.hgetall(item_key(key, rendered_id))
        replies = self.store.flush(pipe)
        out = []
        for rendered_id, item in zip(rendered_ids, replies):
            if not item:
                log.warning("audit item missing: %s %s", key, rendered_id)
                continue
            out.append(
                AuditEntry(
                    id=id_from_str(rendered_id),
                    key=key,
                    field=item.get("field", ""),
                    from_value=item.get("from", ""),
                    to_value=item.get("to", ""),
                    ip=item.get("ip", ""),
                    user=item.get("user", ""),
                    timestamp=item.get("timestamp", ""),
                )
            )
        return out
