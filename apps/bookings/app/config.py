import os
from dataclasses import dataclass
from decimal import Decimal


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_flag(key: str, default: bool) -> bool:
    raw = (os.getenv(key) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


ENV = _env_or("ENV", "dev").lower()
DB_URL = _env_or("BOOKINGS_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/bookings.db"))
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None

SERVICE_FEE_RATE = Decimal(_env_or("BOOKINGS_SERVICE_FEE_RATE", "0.10"))
# Completed stays keep blocking their range so a same-day turnover cannot
# double-book the nights of a stay that just finished.
BLOCK_COMPLETED = _env_flag("BOOKINGS_BLOCK_COMPLETED", True)
DEFAULT_REFUND_METHOD = _env_or("BOOKINGS_DEFAULT_REFUND_METHOD", "original_payment")
BOOKED_DATES_WINDOW_DAYS = int(_env_or("BOOKINGS_BOOKED_DATES_WINDOW_DAYS", "180"))
AUTO_CREATE_SCHEMA = _env_flag("BOOKINGS_AUTO_CREATE_SCHEMA", ENV in ("dev", "test"))
MAX_PAGE_SIZE = 50


def is_prod_env() -> bool:
    return ENV in ("prod", "production", "staging")


@dataclass(frozen=True)
class EngineSettings:
    service_fee_rate: Decimal = SERVICE_FEE_RATE
    block_completed: bool = BLOCK_COMPLETED
    default_refund_method: str = DEFAULT_REFUND_METHOD
    booked_dates_window_days: int = BOOKED_DATES_WINDOW_DAYS
    max_page_size: int = MAX_PAGE_SIZE
