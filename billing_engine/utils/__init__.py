"""Utility helpers for the application."""
from datetime import date, datetime
from os import getenv


def env_bool(key: str, default: bool = False) -> bool:
    val = getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "t", "yes", "y"}


def parse_iso_date(value) -> date | None:
    """Accept a date, a datetime, an ISO string or None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip()[:10])
    raise TypeError(f"Unsupported date value: {value!r}")
