"""
Ephemeral key/value store on top of Redis.

Holds pairing tickets, reservations (name -> owning id) and the sorted-set
indices. Absence is returned as None / False, never raised.
"""
import logging
from typing import Iterator

import redis

from .errors import Transient, UniqueConflict, store_errors

log = logging.getLogger(__name__)


def connect(url: str, timeout: float = 5) -> redis.Redis:
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )


class EphemeralStore:
    def __init__(self, client: redis.Redis):
        self.client = client

    def ping(self) -> bool:
        with store_errors():
            return self.client.ping() is True

    def set_if_absent(self, key: str, value: str, ttl: int | None = None) -> bool:
        with store_errors():
            return bool(self.client.set(key, value, nx=True, ex=ttl))

    def get(self, key: str) -> str | None:
        with store_errors():
            return self.client.get(key)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with store_errors():
            return self.client.delete(*keys)

    def expire(self, key: str, ttl: int) -> bool:
        with store_errors():
            return bool(self.client.expire(key, ttl))

    def ttl(self, key: str) -> int:
        with store_errors():
            return self.client.ttl(key)

    def hset_if_absent(self, key: str, field: str, value: str) -> bool:
        with store_errors():
            return bool(self.client.hsetnx(key, field, value))

    def hget(self, key: str, field: str) -> str | None:
        with store_errors():
            return self.client.hget(key, field)

    def hgetall(self, key: str) -> dict:
        with store_errors():
            return self.client.hgetall(key)

    def hset_many(self, key: str, mapping: dict) -> None:
        if not mapping:
            return
        with store_errors():
            self.client.hset(key, mapping=mapping)

    def hdel(self, key: str, *fields: str) -> int:
        with store_errors():
            return self.client.hdel(key, *fields)

    def lrange(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        with store_errors():
            return self.client.lrange(key, start, stop)

    def zadd(self, key: str, score: float, member: str) -> None:
        with store_errors():
            self.client.zadd(key, {member: score})

    def zrem(self, key: str, member: str) -> None:
        with store_errors():
            self.client.zrem(key, member)

    def zrange(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        with store_errors():
            return self.client.zrange(key, start, stop)

    def zrevrange_by_score(self, key: str, high, low, count: int) -> list[str]:
        """Members scored in [low, high], highest score first."""
        with store_errors():
            return self.client.zrevrangebyscore(key, high, low, start=0, num=count)

    def scan_keys(self, pattern: str) -> Iterator[str]:
        with store_errors():
            yield from self.client.scan_iter(match=pattern, count=500)

    def batch(self):
        """A pipeline whose commands are sent in one round-trip by ``flush``."""
        return self.client.pipeline(transaction=False)

    def flush(self, pipe, strict: bool = True) -> list:
        """Send a batch; replies come back in submission order.

        Failed commands appear as exception instances in the reply list.
        With ``strict`` the first failure is raised as Transient.
        """
        with store_errors():
            replies = pipe.execute(raise_on_error=False)
        if strict:
            for reply in replies:
                if isinstance(reply, Exception):
                    raise Transient(str(reply)) from reply
        return replies

    # Reservations: human-visible name -> owning id, held in a hash.

    def reserve(self, index: str, name: str, owner: str, conflict=UniqueConflict) -> None:
        field = name.lower()
        if self.hset_if_absent(index, field, owner):
            return
        current = self.hget(index, field)
        if current != owner:
            raise conflict()

    def reserved_by(self, index: str, name: str) -> str | None:
        return self.hget(index, name.lower())

    def release(self, index: str, name: str, owner: str | None = None) -> bool:
        field = name.lower()
        if owner is not None and self.hget(index, field) != owner:
            return False
        return self.hdel(index, field) > 0
