"""
Configuration management for the tickflow ingestion service.

Loads environment variables and provides a typed configuration object
for the storage gateway, upstream client, collectors, backfill and
retention components.
"""

import os
import logging
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


DEFAULT_TICKERS = [
    "AAPL", "MSFT", "AMZN", "GOOGL", "META",
    "TSLA", "NVDA", "JPM", "V", "JNJ",
    "AMD", "INTC", "CRM", "NFLX", "PYPL",
]


def _env_bool(key: str, default: str = "true") -> bool:
    return os.getenv(key, default).lower() == "true"


class IngestConfig:
    """Configuration for the market data ingestion service."""

    def __init__(self):
        # Storage
        self.DATABASE_URL: str = self._get_required_env("DATABASE_URL")
        self.DB_POOL_MIN_SIZE: int = int(os.getenv("DB_POOL_MIN_SIZE", "1"))
        self.DB_POOL_MAX_SIZE: int = int(os.getenv("DB_POOL_MAX_SIZE", "5"))
        self.DB_COMMAND_TIMEOUT: float = float(os.getenv("DB_COMMAND_TIMEOUT", "30"))
        self.DB_RETRY_ATTEMPTS: int = int(os.getenv("DB_RETRY_ATTEMPTS", "3"))
        self.DB_RETRY_DELAY: float = float(os.getenv("DB_RETRY_DELAY", "1.0"))
        self.DB_HEALTH_CHECK_INTERVAL: float = float(os.getenv("DB_HEALTH_CHECK_INTERVAL", "30"))

        # Upstream provider
        self.POLYGON_API_KEY: Optional[str] = os.getenv("POLYGON_API_KEY")
        self.POLYGON_REST_URL: str = os.getenv("POLYGON_REST_URL", "https://api.polygon.io")
        self.POLYGON_WS_URL: str = os.getenv("POLYGON_WS_URL", "wss://socket.polygon.io/stocks")
        self.POLYGON_TIMEOUT: float = float(os.getenv("POLYGON_TIMEOUT", "10"))
        self.POLYGON_HISTORICAL_TIMEOUT: float = float(os.getenv("POLYGON_HISTORICAL_TIMEOUT", "15"))
        self.POLYGON_CACHE_TTL: float = float(os.getenv("POLYGON_CACHE_TTL", "3600"))

        # Tracked symbols
        self.TICKERS: List[str] = self._parse_tickers()

        # Streaming collector
        self.STREAM_RECONNECT_DELAY: float = float(os.getenv("STREAM_RECONNECT_DELAY", "5"))

        # Polling collector
        self.POLL_INTERVAL: float = float(os.getenv("POLL_INTERVAL", "30"))
        self.POLL_BATCH_SIZE: int = int(os.getenv("POLL_BATCH_SIZE", "20"))
        self.POLL_BATCH_PAUSE: float = float(os.getenv("POLL_BATCH_PAUSE", "1.0"))
        self.POLL_COLLECTION_TIMEOUT: float = float(os.getenv("POLL_COLLECTION_TIMEOUT", "300"))
        self.POLL_ENRICHMENT_ENABLED: bool = _env_bool("POLL_ENRICHMENT_ENABLED")

        # Backfill orchestrator
        self.BACKFILL_INTERVAL_MINUTES: float = float(os.getenv("BACKFILL_INTERVAL_MINUTES", "60"))
        self.BACKFILL_INITIAL_DELAY: float = float(os.getenv("BACKFILL_INITIAL_DELAY", "10"))
        self.BACKFILL_LOOKBACK_DAYS: int = int(os.getenv("BACKFILL_LOOKBACK_DAYS", "7"))
        self.BACKFILL_GAP_THRESHOLD_MINUTES: float = float(os.getenv("BACKFILL_GAP_THRESHOLD_MINUTES", "15"))
        self.BACKFILL_GAP_DELAY: float = float(os.getenv("BACKFILL_GAP_DELAY", "1.0"))
        self.BACKFILL_MAX_FINISHED_JOBS: int = int(os.getenv("BACKFILL_MAX_FINISHED_JOBS", "100"))

        # Retention cleanup
        self.RETENTION_INTERVAL: float = float(os.getenv("RETENTION_INTERVAL", "300"))
        self.RETENTION_WINDOW_MINUTES: float = float(os.getenv("RETENTION_WINDOW_MINUTES", "15"))
        self.RETENTION_BATCH_SIZE: int = int(os.getenv("RETENTION_BATCH_SIZE", "250"))
        self.RETENTION_MAX_ATTEMPTS: int = int(os.getenv("RETENTION_MAX_ATTEMPTS", "5"))
        self.RETENTION_BATCH_PAUSE: float = float(os.getenv("RETENTION_BATCH_PAUSE", "0.1"))

        # Component switches
        self.ENABLE_STREAMING: bool = _env_bool("ENABLE_STREAMING")
        self.ENABLE_POLLING: bool = _env_bool("ENABLE_POLLING")
        self.ENABLE_BACKFILL: bool = _env_bool("ENABLE_BACKFILL")
        self.ENABLE_RETENTION: bool = _env_bool("ENABLE_RETENTION")

        # Logging Configuration
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_FORMAT: str = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        # Application Settings
        self.ENVIRONMENT: str = os.getenv("ENVIRONMENT", "local")

        self._validate_config()

    def _get_required_env(self, key: str) -> str:
        """Get required environment variable or raise error."""
        value = os.getenv(key)
        if not value:
            # Allow test environments to bypass required env vars
            if os.getenv("ENVIRONMENT") == "test":
                return f"postgresql://test_{key.lower()}"
            raise ValueError(f"Required environment variable {key} is not set")
        return value

    def _parse_tickers(self) -> List[str]:
        """
        Parse the tracked symbol list from TICKERS (comma-separated).

        Falls back to DEFAULT_TICKERS when unset or empty.
        """
        tickers_env = os.getenv("TICKERS")
        if tickers_env:
            tickers = [t.strip().upper() for t in tickers_env.split(",") if t.strip()]
            if tickers:
                return tickers
        return list(DEFAULT_TICKERS)

    def _validate_config(self) -> None:
        """Validate configuration values."""
        if self.ENVIRONMENT == "test":
            return

        positive = {
            "DB_POOL_MAX_SIZE": self.DB_POOL_MAX_SIZE,
            "DB_HEALTH_CHECK_INTERVAL": self.DB_HEALTH_CHECK_INTERVAL,
            "POLL_INTERVAL": self.POLL_INTERVAL,
            "POLL_BATCH_SIZE": self.POLL_BATCH_SIZE,
            "BACKFILL_INTERVAL_MINUTES": self.BACKFILL_INTERVAL_MINUTES,
            "BACKFILL_GAP_THRESHOLD_MINUTES": self.BACKFILL_GAP_THRESHOLD_MINUTES,
            "RETENTION_INTERVAL": self.RETENTION_INTERVAL,
            "RETENTION_BATCH_SIZE": self.RETENTION_BATCH_SIZE,
            "RETENTION_MAX_ATTEMPTS": self.RETENTION_MAX_ATTEMPTS,
        }
        for key, value in positive.items():
            if value <= 0:
                raise ValueError(f"{key} must be positive")

        if self.DB_POOL_MIN_SIZE > self.DB_POOL_MAX_SIZE:
            raise ValueError("DB_POOL_MIN_SIZE cannot exceed DB_POOL_MAX_SIZE")

        if not self.TICKERS:
            raise ValueError("TICKERS cannot be empty")

        if not self.DATABASE_URL.startswith(("postgresql://", "postgres://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT in ["local", "development"]


# Global configuration instance
config = IngestConfig()


def setup_logging() -> logging.Logger:
    """Set up logging configuration for the service."""
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format=config.LOG_FORMAT
    )
    return logging.getLogger("tickflow")
