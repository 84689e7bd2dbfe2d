from __future__ import annotations

import os


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def get_base_currency() -> str:
    raw = os.getenv("BASE_CURRENCY", "HUF")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "HUF"


def get_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///./fincore.db")


def get_fx_api_url() -> str:
    return os.getenv("FX_API_URL", "https://api.frankfurter.app").rstrip("/")


def get_fx_max_age_hours() -> float:
    raw = os.getenv("FX_MAX_AGE_HOURS", "24")
    try:
        value = float(raw)
    except ValueError:
        return 24.0
    return value if value >= 0 else 24.0


def get_log_format() -> str:
    raw = os.getenv("LOG_FORMAT", "console").strip().lower()
    return raw if raw in {"console", "json"} else "console"
