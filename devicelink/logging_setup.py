import logging
import os
import re

LEVELS = {
    "debug": logging.DEBUG,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

SECRET_FIELDS = (
    "secret",
    "email_confirmation",
    "access_token",
    "refresh_token",
    "client_secret",
    "token",
)

# Matches field=value, field: value and "field": "value" shapes
_SECRET_RE = re.compile(
    r"""(?P<key>["']?\b(?:%s)\b["']?\s*[=:]\s*)(?P<quote>["']?)[^\s"',}&]+"""
    % "|".join(SECRET_FIELDS)
)


def redact(text: str) -> str:
    return _SECRET_RE.sub(lambda m: m.group("key") + m.group("quote") + "[redacted]", text)


class RedactingFilter(logging.Filter):
    """Masks secret-bearing fields in the rendered log message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def setup_logging(level: str = "error", log_path: str = "") -> None:
    root = logging.getLogger()
    root.setLevel(LEVELS.get(level, logging.ERROR))

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    redactor = RedactingFilter()

    for handler in [h for h in root.handlers if getattr(h, "_devicelink", False)]:
        root.removeHandler(handler)
        handler.close()

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    ch.addFilter(redactor)
    ch._devicelink = True
    root.addHandler(ch)

    if log_path:
        log_dir = os.path.dirname(log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        fh = logging.FileHandler(log_path)
        fh.setFormatter(fmt)
        fh.addFilter(redactor)
        fh._devicelink = True
        root.addHandler(fh)
