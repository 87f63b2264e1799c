"""
Host process wiring for the ingestion core.

Builds the storage gateway, store, upstream client and the four
components, and starts/stops them in dependency order.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .backfill import BackfillOrchestrator
from .config import IngestConfig, config as default_config
from .database import Database
from .market_store import MarketDataStore
from .models import BackfillJob, utc_now
from .poll_collector import PollCollector
from .polygon_client import PolygonClient
from .retention import RetentionCleanup
from .stream_collector import StreamCollector

logger = logging.getLogger("tickflow.service")


class IngestionService:
    """Owns every ingestion component and their shared storage gateway."""

    def __init__(
        self,
        settings: Optional[IngestConfig] = None,
        database: Optional[Database] = None,
        client: Optional[PolygonClient] = None,
    ):
        self.settings = settings or default_config
        self.database = database or Database(self.settings.DATABASE_URL)
        self.store = MarketDataStore(self.database)
        self.client = client or PolygonClient()

        symbols = self.settings.TICKERS
        self.stream_collector = StreamCollector(self.store, symbols=symbols)
        self.poll_collector = PollCollector(self.database, self.store, self.client, symbols=symbols)
        self.backfill = BackfillOrchestrator(self.database, self.store, self.client, symbols=symbols)
        self.retention = RetentionCleanup(self.database, self.store)

        self._components = [
            ("streaming", self.settings.ENABLE_STREAMING, self.stream_collector),
            ("polling", self.settings.ENABLE_POLLING, self.poll_collector),
            ("backfill", self.settings.ENABLE_BACKFILL, self.backfill),
            ("retention", self.settings.ENABLE_RETENTION, self.retention),
        ]
        self._started = False
        self.started_at: Optional[datetime] = None

    @property
    def is_ready(self) -> bool:
        return self._started and self.database.is_initialized

    async def start(self) -> None:
        """Initialize storage (fatal on failure), then start enabled components."""
        if self._started:
            return

        logger.info("Starting tickflow ingestion services...")
        await self.database.initialize()
        await self.database.start_health_monitor()

        for name, enabled, component in self._components:
            if not enabled:
                logger.info(f"{name} component disabled by configuration")
                continue
            await component.start()
            logger.info(f"{name} component started")

        self._started = True
        self.started_at = utc_now()
        logger.info(f"All services started for {len(self.settings.TICKERS)} symbols")

    async def stop(self) -> None:
        """Stop components in reverse order, then close the client and pool."""
        logger.info("Shutting down tickflow ingestion services...")

        for name, _, component in reversed(self._components):
            try:
                await component.stop()
            except Exception as e:
                logger.warning(f"Error stopping {name} component: {e}")

        try:
            await self.client.close()
        except Exception as e:
            logger.warning(f"Error closing Polygon client: {e}")

        try:
            await self.database.close()
        except Exception as e:
            logger.warning(f"Error closing database: {e}")

        self._started = False
        logger.info("All services shut down")

    # Backfill interface for the HTTP layer

    def trigger_backfill(self, symbols: Optional[List[str]] = None, start: Optional[datetime] = None,
                         end: Optional[datetime] = None, force: bool = False) -> str:
        return self.backfill.trigger_backfill(symbols=symbols, start=start, end=end, force=force)

    def get_backfill_status(self, job_id: str) -> Optional[BackfillJob]:
        return self.backfill.get_backfill_status(job_id)

    def list_active_jobs(self) -> List[BackfillJob]:
        return self.backfill.list_active_jobs()

    async def get_stats(self) -> Dict[str, Any]:
        """Component statistics plus table counts when storage is reachable."""
        stats: Dict[str, Any] = {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "symbols": list(self.settings.TICKERS),
            "database": self.database.get_stats(),
            "polygon": self.client.get_stats(),
            "streaming": self.stream_collector.get_stats(),
            "polling": self.poll_collector.get_stats(),
            "backfill": self.backfill.get_stats(),
            "retention": self.retention.get_stats(),
        }
        if self.database.is_initialized:
            try:
                stats["tables"] = await self.store.get_stats()
            except Exception as e:
                logger.warning(f"Failed to read table stats: {e}")
                stats["tables"] = {"error": str(e)}
        return stats
