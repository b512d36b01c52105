from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


DEFAULT_DB_URL = "sqlite+pysqlite:///laptop_ledger.db"


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _float_env(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class LedgerSettings:
    db_url: str = DEFAULT_DB_URL
    lookup_timeout_seconds: float = 4.0
    write_timeout_seconds: float = 15.0
    cache_path: str | None = None
    scan_debounce_seconds: float = 1.4
    scan_session_timeout_seconds: float = 300.0
    cors_allow_origins: tuple[str, ...] = ("http://127.0.0.1", "http://localhost")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "LedgerSettings":
        return cls(
            db_url=(os.environ.get("LAPTOP_LEDGER_DB_URL") or DEFAULT_DB_URL).strip(),
            lookup_timeout_seconds=_float_env("LAPTOP_LEDGER_LOOKUP_TIMEOUT_SECONDS", 4.0),
            write_timeout_seconds=_float_env("LAPTOP_LEDGER_WRITE_TIMEOUT_SECONDS", 15.0),
            cache_path=(os.environ.get("LAPTOP_LEDGER_CACHE_PATH") or "").strip() or None,
            scan_debounce_seconds=_float_env("LAPTOP_LEDGER_SCAN_DEBOUNCE_SECONDS", 1.4),
            scan_session_timeout_seconds=_float_env("LAPTOP_LEDGER_SCAN_SESSION_TIMEOUT_SECONDS", 300.0),
            cors_allow_origins=tuple(
                _parse_csv_env("CORS_ALLOW_ORIGINS", "http://127.0.0.1,http://localhost")
            ),
            log_level=(os.environ.get("LOG_LEVEL") or "INFO").strip().upper(),
        )
