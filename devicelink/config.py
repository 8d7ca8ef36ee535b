import os

from dotenv import load_dotenv

load_dotenv()


def _bool_env(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes")


def _int_env(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


LOG_LEVELS = ("debug", "warn", "error")


class Config:
    MAINTENANCE_MODE = _bool_env("MAINTENANCE_MODE", False)

    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///devicelink.db")
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    # Per-call deadline for either store, in seconds
    STORE_TIMEOUT_SECONDS = _int_env("STORE_TIMEOUT_SECONDS", 5)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "error").lower()
    LOG_FILE = os.getenv("LOG_FILE", "")

    OAUTH_CLIENT_ID = os.getenv("OAUTH_CLIENT_ID", "")
    OAUTH_CLIENT_SECRET = os.getenv("OAUTH_CLIENT_SECRET", "")
    OAUTH_CALLBACK_URL = os.getenv("OAUTH_CALLBACK_URL", "")

    # Empty address means ids come from the in-process generator
    ID_GEN_ADDRESS = os.getenv("ID_GEN_ADDRESS", "")
    ID_GEN_TOKEN = os.getenv("ID_GEN_TOKEN", "")
    ID_GEN_WORKER = _int_env("ID_GEN_WORKER", 0)

    TRIAL_PERIOD_DAYS = _int_env("TRIAL_PERIOD_DAYS", 14)
    GRACE_PERIOD_DAYS = _int_env("GRACE_PERIOD_DAYS", 3)
    USE_SUBSCRIPTIONS = _bool_env("USE_SUBSCRIPTIONS", True)

    @classmethod
    def as_dict(cls) -> dict:
        out = {k: getattr(cls, k) for k in dir(cls) if k.isupper()}
        if out["LOG_LEVEL"] not in LOG_LEVELS:
            out["LOG_LEVEL"] = "error"
        return out
