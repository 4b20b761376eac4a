from __future__ import annotations

import os

from wealthboard.currency_conversion import normalize_currency

DEFAULT_DATABASE_URL = "sqlite:///./wealthboard.db"
DEFAULT_FRONTEND_ORIGIN = "http://localhost:3000"
DEFAULT_FX_BASE_URL = "https://api.frankfurter.app"


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def get_frontend_origin() -> str:
    return os.getenv("FRONTEND_ORIGIN", DEFAULT_FRONTEND_ORIGIN)


def get_reporting_currency() -> str:
    return _currency_from_env("REPORTING_CURRENCY", "EUR")


def get_snapshot_currency() -> str:
    """Currency the brokerage sync history is recorded in."""
    return _currency_from_env("SNAPSHOT_CURRENCY", "USD")


def get_fx_base_url() -> str:
    return os.getenv("FX_BASE_URL", DEFAULT_FX_BASE_URL).rstrip("/")


def get_fx_cache_path() -> str | None:
    return os.getenv("FX_CACHE_PATH") or None


def get_log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _currency_from_env(name: str, default: str) -> str:
    raw = os.getenv(name, default)
    try:
        return normalize_currency(raw)
    except ValueError:
        return default
