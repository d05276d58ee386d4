import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./slotkeeper.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    SQLITE_BUSY_TIMEOUT_SECONDS = _get_int("SQLITE_BUSY_TIMEOUT_SECONDS", 30)
    REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0").strip()
    DEFAULT_TENANT_SLUG = os.getenv("DEFAULT_TENANT_SLUG", "").strip().lower()
    # Wall-clock zone for tenants without their own; slot times are local.
    DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "UTC").strip() or "UTC"

    # Checkout hold window for reservation locks.
    LOCK_TTL_SECONDS = _get_int("LOCK_TTL_SECONDS", 120)
    LOCK_SWEEP_INTERVAL_SECONDS = _get_int("LOCK_SWEEP_INTERVAL_SECONDS", 60)
    BULK_BOOKING_MAX_ITEMS = _get_int("BULK_BOOKING_MAX_ITEMS", 50)

    EVENT_BUS_ENABLED = _get_bool("EVENT_BUS_ENABLED", False)
    EVENT_BUS_STREAM = os.getenv("EVENT_BUS_STREAM", "slotkeeper.events").strip()
    OUTBOX_MAX_RETRIES = _get_int("OUTBOX_MAX_RETRIES", 8)

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    LOG_JSON = _get_bool("LOG_JSON", True)


settings = Settings()
