# price_intel/config/settings.py

"""Central configuration for the price intelligence engine."""

import os
from pathlib import Path

from curl_cffi.requests import BrowserTypeLiteral
from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    """Read a float override from the environment."""
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    """Read an int override from the environment."""
    raw = os.getenv(name)
    return int(raw) if raw else default


class Settings:
    """Central configuration for the price intelligence engine."""

    # --- Paths ---
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    DATA_DIR: Path = Path(
        os.getenv("PRICE_INTEL_DATA_DIR", str(BASE_DIR / "data"))
    )
    DB_PATH: Path = Path(
        os.getenv("PRICE_INTEL_DB_PATH", str(DATA_DIR / "price_intel.db"))
    )
    LOGS_DIR: Path = BASE_DIR / "logs"
    CHARTS_DIR: Path = DATA_DIR / "charts"

    # --- Retention & windows ---
    RETENTION_DAYS: int = _env_int("PRICE_INTEL_RETENTION_DAYS", 90)
    DEFAULT_WINDOW_DAYS: int = 30

    # --- Statistics & forecasting ---
    TREND_THRESHOLD_PCT: float = 5.0    # First-vs-last change for a trend
    MIN_FORECAST_OBSERVATIONS: int = 7
    MAX_FORECAST_DAYS: int = 30
    CONFIDENCE_FLOOR: float = 50.0
    CONFIDENCE_CEILING: float = 95.0
    FORECAST_STRATEGY: str = os.getenv(
        "PRICE_INTEL_FORECAST_STRATEGY",
        "price_intel.services.forecast_engine.TrendSeasonalityStrategy",
    )

    # --- Scheduler ---
    LEASE_NAME: str = "price-cycle"
    LEASE_TTL_SECONDS: float = _env_float("PRICE_INTEL_LEASE_TTL", 900.0)
    CYCLE_BUDGET_SECONDS: float = _env_float(
        "PRICE_INTEL_CYCLE_BUDGET", 600.0
    )
    CALL_TIMEOUT_SECONDS: float = _env_float(
        "PRICE_INTEL_CALL_TIMEOUT", 30.0
    )
    MAX_CONCURRENCY: int = _env_int("PRICE_INTEL_MAX_CONCURRENCY", 8)

    # --- Collection (HTTP price feeds) ---
    PRICE_FEED_URL: str = os.getenv("PRICE_INTEL_FEED_URL", "")
    REQUEST_DELAY: float = 1.0          # Seconds between retries
    REQUEST_TIMEOUT: int = 15           # Seconds before a request times out
    MAX_RETRIES: int = 3                # Retry count on transient failures
    CIRCUIT_BREAKER_THRESHOLD: int = 3  # Consecutive failures to trip
    CIRCUIT_BREAKER_COOLDOWN: float = 300.0
    MAX_DELAY_MULTIPLIER: int = 8       # Cap for adaptive backoff
    IMPERSONATE_BROWSER: BrowserTypeLiteral = "chrome131"
    DEFAULT_HEADERS: dict[str, str] = {
        "Accept": "application/json",
        "Accept-Language": "en-US,en;q=0.9",
    }

    # --- Notifications ---
    NOTIFY_WEBHOOK_URL: str = os.getenv("PRICE_INTEL_WEBHOOK_URL", "")
    APP_BASE_URL: str = os.getenv(
        "PRICE_INTEL_APP_URL", "https://travel.example.com"
    )
    NOTIFICATION_CHANNELS: list[str] = ["EMAIL", "PUSH", "SMS", "WEBHOOK"]

    # --- Collectors (registry for future extensibility) ---
    AVAILABLE_SOURCES: list[dict[str, str]] = [
        {
            "id": "price_feed",
            "label": "Price Feed",
            "collector": (
                "price_intel.collectors.feed_collector.FeedCollector"
            ),
        },
    ]
