"""
Retention cleanup for high-frequency streaming rows.

Deletes streaming-sourced observations older than the retention window
in small id-ordered batches so no single statement holds long locks on
tables that are being written to.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from .config import config
from .database import Database
from .market_store import OBSERVATION_TABLES, MarketDataStore
from .models import SourceTag, utc_now

logger = logging.getLogger("tickflow.retention")

T = TypeVar("T")


class RetentionCleanup:
    """Periodic, paginated deletion of expired streaming rows."""

    def __init__(
        self,
        database: Database,
        store: MarketDataStore,
        interval: Optional[float] = None,
        window_minutes: Optional[float] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        batch_pause: Optional[float] = None,
        backoff_base: float = 1.0,
        tables: Iterable[str] = OBSERVATION_TABLES,
        source: SourceTag = SourceTag.STREAMING,
    ):
        """
        Initialize the cleanup routine.

        Args:
            database: Storage gateway
            store: Market data store providing the id select/delete helpers
            interval: Seconds between cleanup passes
            window_minutes: Rows older than this many minutes are expired
            batch_size: Ids deleted per batch
            max_attempts: Attempts per batch before the pass aborts
            batch_pause: Seconds to pause between batches
            backoff_base: Multiplier for the 2**attempt retry delay
            tables: Observation tables to clean
            source: Source tag whose rows expire
        """
        self.database = database
        self.store = store
        self.interval = interval if interval is not None else config.RETENTION_INTERVAL
        self.window = timedelta(
            minutes=window_minutes if window_minutes is not None else config.RETENTION_WINDOW_MINUTES
        )
        self.batch_size = batch_size if batch_size is not None else config.RETENTION_BATCH_SIZE
        self.max_attempts = max_attempts if max_attempts is not None else config.RETENTION_MAX_ATTEMPTS
        self.batch_pause = batch_pause if batch_pause is not None else config.RETENTION_BATCH_PAUSE
        self.backoff_base = backoff_base
        self.tables = list(tables)
        self.source = source

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._cleaning = False

        # Statistics
        self._passes = 0
        self._skipped_passes = 0
        self._aborted_passes = 0
        self._rows_deleted = 0
        self._batch_retries = 0
        self._last_result: Optional[Dict[str, int]] = None

    async def start(self) -> None:
        """Start the periodic cleanup loop."""
        if self._running:
            logger.warning("RetentionCleanup is already running")
            return

        self._running = True
        self._shutdown_event.clear()
        self._loop_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"RetentionCleanup started: {self.source.value} rows older than "
            f"{self.window} every {self.interval}s"
        )

    async def stop(self) -> None:
        """Stop the cleanup loop."""
        if not self._running:
            return

        self._running = False
        self._shutdown_event.set()
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info(f"RetentionCleanup stopped. Rows deleted: {self._rows_deleted}")

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_cleanup()
            except Exception as e:
                logger.error(f"Retention pass aborted, retrying next interval: {e}")

    async def run_cleanup(self) -> Optional[Dict[str, int]]:
        """
        Run one cleanup pass over every table.

        Returns:
            Rows deleted per table, or None when another pass is active or
            storage is not initialized

        Raises:
            The last batch error once a batch exhausts its attempts
        """
        if self._cleaning:
            self._skipped_passes += 1
            logger.warning("Retention cleanup already in progress, skipping")
            return None

        self._cleaning = True
        try:
            if not self.database.is_initialized:
                logger.error("Database not initialized, skipping retention cleanup")
                return None

            cutoff = utc_now() - self.window
            results: Dict[str, int] = {}
            try:
                for table in self.tables:
                    results[table] = await self.cleanup_table_in_batches(table, cutoff)
            except Exception:
                self._aborted_passes += 1
                raise

            self._passes += 1
            self._last_result = results
            total = sum(results.values())
            if total:
                logger.info(f"Retention cleanup removed {total} rows: {results}")
            return results
        finally:
            self._cleaning = False

    async def cleanup_table_in_batches(self, table: str, cutoff: datetime) -> int:
        """
        Delete expired rows of one table, one id page at a time.

        The cursor only moves past a page once that page's delete succeeded,
        so a retried page never skips rows.

        Returns:
            Total rows deleted
        """
        last_id = 0
        total_deleted = 0

        while True:
            ids: List[int] = await self._with_backoff(
                lambda: self.store.select_expired_ids(table, self.source.value, cutoff, last_id, self.batch_size),
                f"select batch from {table}"
            )
            if not ids:
                break

            deleted = await self._with_backoff(
                lambda: self.store.delete_ids(table, ids, self.source.value),
                f"delete batch from {table}"
            )
            total_deleted += deleted
            self._rows_deleted += deleted
            last_id = ids[-1]

            await asyncio.sleep(self.batch_pause)

        return total_deleted

    async def _with_backoff(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Run an operation, retrying with 2**attempt backoff up to max_attempts."""
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                if attempt >= self.max_attempts:
                    logger.error(f"Retention {description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.backoff_base * (2 ** attempt)
                self._batch_retries += 1
                logger.warning(
                    f"Retention {description} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay}s: {e}"
                )
                await asyncio.sleep(delay)
                attempt += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get cleanup statistics."""
        return {
            "running": self._running,
            "cleaning": self._cleaning,
            "window_minutes": self.window.total_seconds() / 60,
            "batch_size": self.batch_size,
            "passes": self._passes,
            "skipped_passes": self._skipped_passes,
            "aborted_passes": self._aborted_passes,
            "rows_deleted": self._rows_deleted,
            "batch_retries": self._batch_retries,
            "last_result": self._last_result,
        }
