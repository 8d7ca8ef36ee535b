"""
64-bit identifiers: canonical string form and the ID Source.

The string form is the unsigned varint encoding of the id padded to ten
bytes and rendered as hex, so every id renders to a 20 character string.
Zero means "unset".
"""
import logging
import socket
import struct
import threading
import time

from .errors import InvalidInput, Transient

log = logging.getLogger(__name__)

MAX_VARINT_LEN = 10
# 2012-01-01T00:00:00Z
EPOCH_MS = 1325376000000

WORKER_BITS = 10
SEQUENCE_BITS = 12
MAX_WORKER = (1 << WORKER_BITS) - 1
MAX_SEQUENCE = (1 << SEQUENCE_BITS) - 1


def id_to_str(value: int) -> str:
    if value < 0 or value >= 1 << 64:
        raise InvalidInput(f"id out of range: {value}")
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    out.extend(b"\x00" * (MAX_VARINT_LEN - len(out)))
    return out.hex()


def id_from_str(raw: str) -> int:
    try:
        data = bytes.fromhex(raw)
    except (TypeError, ValueError):
        raise InvalidInput(f"malformed id: {raw!r}")
    value = 0
    shift = 0
    for byte in data[:MAX_VARINT_LEN]:
        value |= (byte & 0x7F) << shift
        if byte < 0x80:
            if value >= 1 << 64:
                break
            return value
        shift += 7
    raise InvalidInput(f"malformed id: {raw!r}")


class IDGenerationError(Exception):
    pass


class IDSource:
    """Hands out unique ids; ``next`` retries the generator five times."""

    retries = 5

    def __init__(self, telemetry=None):
        self.telemetry = telemetry

    def _generate(self) -> int:
        raise NotImplementedError

    def next(self) -> int:
        last_error = None
        for _ in range(self.retries):
            try:
                return self._generate()
            except (OSError, IDGenerationError) as e:
                last_error = e
                log.error("id generation failed: %s", e)
                if self.telemetry is not None:
                    self.telemetry.incr("ids.retry")
        log.error("No ID generated.")
        raise Transient("no id generated") from last_error


class SnowflakeIDSource(IDSource):
    """Time-ordered ids: 41 bits of milliseconds, 10 bits of worker, 12 of sequence."""

    def __init__(self, worker: int = 0, telemetry=None, clock=time.time):
        super().__init__(telemetry)
        if not 0 <= worker <= MAX_WORKER:
            raise InvalidInput(f"worker must be between 0 and {MAX_WORKER}")
        self.worker = worker
        self._clock = clock
        self._lock = threading.Lock()
        self._last_ms = -1
        self._sequence = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000) - EPOCH_MS

    def _generate(self) -> int:
        with self._lock:
            now = self._now_ms()
            if now < self._last_ms:
                raise IDGenerationError("clock moved backwards")
            if now == self._last_ms:
                self._sequence = (self._sequence + 1) & MAX_SEQUENCE
                if self._sequence == 0:
                    while now <= self._last_ms:
                        now = self._now_ms()
            else:
                self._sequence = 0
            self._last_ms = now
            return (now << (WORKER_BITS + SEQUENCE_BITS)) | (self.worker << SEQUENCE_BITS) | self._sequence


class NoeqIDSource(IDSource):
    """Client for a noeq id server: optional auth frame, then one id per request byte."""

    def __init__(self, address: str, token: str = "", telemetry=None, timeout: float = 5.0):
        super().__init__(telemetry)
        host, _, port = address.rpartition(":")
        self.address = (host or "localhost", int(port or 4444))
        self.token = token.encode()
        self.timeout = timeout
        self._sock = None
        self._lock = threading.Lock()

    def _connect(self) -> socket.socket:
        sock = socket.create_connection(self.address, timeout=self.timeout)
        if self.token:
            sock.sendall(b"\x00" + bytes([len(self.token)]) + self.token)
        return sock

    def _recv_exact(self, size: int) -> bytes:
        buf = b""
        while len(buf) < size:
            chunk = self._sock.recv(size - len(buf))
            if not chunk:
                raise IDGenerationError("id server closed the connection")
            buf += chunk
        return buf

    def _generate(self) -> int:
        with self._lock:
            try:
                if self._sock is None:
                    self._sock = self._connect()
                self._sock.sendall(b"\x01")
                data = self._recv_exact(8)
            except (OSError, IDGenerationError):
                self.close()
                raise
        return struct.unpack(">Q", data)[0]

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            finally:
                self._sock = None


def id_source_from_config(config, telemetry=None) -> IDSource:
    address = config.get("ID_GEN_ADDRESS")
    if address:
        return NoeqIDSource(
            address,
            config.get("ID_GEN_TOKEN", ""),
            telemetry=telemetry,
            timeout=config.get("STORE_TIMEOUT_SECONDS", 5),
        )
    worker = config.get("ID_GEN_WORKER", 0)
    if not worker:
        log.warning("ids come from the local generator as worker 0; set ID_GEN_WORKER per process")
    return SnowflakeIDSource(worker, telemetry=telemetry)
