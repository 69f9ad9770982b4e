# backend/stockledger/config.py
from __future__ import annotations
import os


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_REDACT_SECRETS = _env_bool("LOG_REDACT_SECRETS", True)

    # External demand prediction service
    PREDICTION_SERVICE_URL = os.environ.get("PREDICTION_SERVICE_URL", "http://localhost:9031")
    PREDICTION_TIMEOUT_SECONDS = _env_float("PREDICTION_TIMEOUT_SECONDS", 10.0)

    # Stock alert multipliers (relative to reorder point / max quantity)
    STOCK_ALERT_CRITICAL_THRESHOLD = _env_float("STOCK_ALERT_CRITICAL_THRESHOLD", 0.10)
    STOCK_ALERT_LOW_THRESHOLD = _env_float("STOCK_ALERT_LOW_THRESHOLD", 0.50)
    STOCK_ALERT_HIGH_THRESHOLD = _env_float("STOCK_ALERT_HIGH_THRESHOLD", 1.50)
    STOCK_ALERT_OVERSTOCK_THRESHOLD = _env_float("STOCK_ALERT_OVERSTOCK_THRESHOLD", 2.00)

    # Forecasting windows
    FORECAST_HISTORICAL_DAYS = _env_int("FORECAST_HISTORICAL_DAYS", 90)
    FORECAST_DAYS = _env_int("FORECAST_DAYS", 30)
    FORECAST_MIN_HISTORY_DAYS = _env_int("FORECAST_MIN_HISTORY_DAYS", 7)
    FORECAST_MOVING_AVERAGE_WINDOW = _env_int("FORECAST_MOVING_AVERAGE_WINDOW", 14)
    FORECAST_LEAD_TIME_DAYS = _env_int("FORECAST_LEAD_TIME_DAYS", 7)
    FORECAST_RETENTION_DAYS = _env_int("FORECAST_RETENTION_DAYS", 7)
    FORECAST_CATEGORIES = tuple(
        c.strip().upper()
        for c in os.environ.get("FORECAST_CATEGORIES", "CONSUMABLE,CLEANING,LINENS").split(",")
        if c.strip()
    )

    # Usage reporting (off unless explicitly enabled)
    USAGE_TRACKING_ENABLED = _env_bool("USAGE_TRACKING_ENABLED", False)
    USAGE_TRACKING_URL = os.environ.get(
        "USAGE_TRACKING_URL", "http://localhost:9101/internal/track-usage"
    )
    USAGE_BATCH_SIZE = _env_int("USAGE_BATCH_SIZE", 10)
    USAGE_TRACKING_TIMEOUT_SECONDS = _env_float("USAGE_TRACKING_TIMEOUT_SECONDS", 5.0)
    USAGE_MAX_RETRIES = _env_int("USAGE_MAX_RETRIES", 2)
    USAGE_RETRY_DELAY_SECONDS = _env_float("USAGE_RETRY_DELAY_SECONDS", 1.0)
