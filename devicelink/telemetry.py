"""
In-process counters and timers.

Side channel for events that are reported but never returned to callers,
such as failed audit writes or failed logins.
"""
import logging
import threading
from collections import Counter

log = logging.getLogger(__name__)


class Telemetry:
    def __init__(self, prefix: str = "devicelink"):
        self.prefix = prefix
        self._counters: Counter = Counter()
        self._timings: dict[str, list[int]] = {}
        self._lock = threading.Lock()

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount
        log.debug("stat %s.%s +%d", self.prefix, name, amount)

    def timing(self, name: str, elapsed_ms: int) -> None:
        with self._lock:
            self._timings.setdefault(name, []).append(elapsed_ms)
        log.debug("timing %s.%s %dms", self.prefix, name, elapsed_ms)

    def count(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def snapshot(self) -> dict:
        with self._lock:
            return dict(self._counters)
