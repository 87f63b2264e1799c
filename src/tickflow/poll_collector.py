"""
Periodic snapshot collector.

Every tick the tracked symbols are fetched in fixed-size batches; members
of a batch run concurrently and the next batch starts only after all of
them settle, followed by a short pause. One failing symbol never affects
the rest of its batch.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import config
from .database import Database
from .market_store import MarketDataStore
from .models import (
    AggregateBar,
    CollectionResult,
    InstrumentSnapshot,
    PricePoint,
    SourceTag,
    utc_now,
)
from .polygon_client import PolygonClient

logger = logging.getLogger("tickflow.poll_collector")


def chunk(items: List[str], size: int) -> List[List[str]]:
    """Split items into consecutive lists of at most `size` entries."""
    return [items[i:i + size] for i in range(0, len(items), size)]


class PollCollector:
    """
    Polling ingestion path.

    Features:
    - Batched, rate-limited snapshot fetches
    - Instrument upsert and observation appends in one transaction per symbol
    - Optional enrichment (fundamentals, ratios, technical indicators)
    - Re-entrancy guard with a stuck-run ceiling
    """

    def __init__(
        self,
        database: Database,
        store: MarketDataStore,
        client: PolygonClient,
        symbols: Optional[List[str]] = None,
        interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        batch_pause: Optional[float] = None,
        collection_timeout: Optional[float] = None,
        enrichment_enabled: Optional[bool] = None,
    ):
        self.database = database
        self.store = store
        self.client = client
        self.symbols = [s.upper() for s in (symbols or config.TICKERS)]
        self.interval = interval if interval is not None else config.POLL_INTERVAL
        self.batch_size = batch_size if batch_size is not None else config.POLL_BATCH_SIZE
        self.batch_pause = batch_pause if batch_pause is not None else config.POLL_BATCH_PAUSE
        self.collection_timeout = (
            collection_timeout if collection_timeout is not None else config.POLL_COLLECTION_TIMEOUT
        )
        self.enrichment_enabled = (
            enrichment_enabled if enrichment_enabled is not None else config.POLL_ENRICHMENT_ENABLED
        )

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None

        # Re-entrancy guard
        self._collecting = False
        self._collection_started: Optional[float] = None
        self._run_token: Optional[object] = None

        # Statistics
        self._runs = 0
        self._skipped_runs = 0
        self._forced_clears = 0
        self._symbols_succeeded = 0
        self._symbols_failed = 0
        self._enrichment_writes = 0
        self._last_result: Optional[CollectionResult] = None

    @property
    def is_collecting(self) -> bool:
        return self._collecting

    async def start(self) -> None:
        """Start the polling loop; the first collection runs immediately."""
        if self._running:
            logger.warning("PollCollector is already running")
            return

        self._running = True
        self._shutdown_event.clear()
        self._loop_task = asyncio.create_task(self._poll_loop())
        logger.info(
            f"PollCollector started: {len(self.symbols)} symbols every {self.interval}s "
            f"(batch size {self.batch_size})"
        )

    async def stop(self) -> None:
        """Stop the polling loop."""
        if not self._running:
            return

        logger.info("Stopping PollCollector...")
        self._running = False
        self._shutdown_event.set()

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        logger.info(
            f"PollCollector stopped. Final stats: runs={self._runs}, "
            f"succeeded={self._symbols_succeeded}, failed={self._symbols_failed}"
        )

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.collect()
            except Exception as e:
                logger.error(f"Error in polling loop: {e}")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                continue

    async def collect(self) -> Optional[CollectionResult]:
        """
        Run one collection cycle over all tracked symbols.

        Returns:
            CollectionResult, or None when the cycle was skipped (another run
            active, or storage not initialized)
        """
        now = time.monotonic()
        if self._collecting:
            elapsed = now - (self._collection_started or now)
            if elapsed <= self.collection_timeout:
                self._skipped_runs += 1
                logger.warning(f"Previous collection still running ({elapsed:.0f}s), skipping this cycle")
                return None
            self._forced_clears += 1
            logger.warning(
                f"Collection flag held for {elapsed:.0f}s (limit {self.collection_timeout}s), "
                f"force-clearing and starting a fresh run"
            )

        run_token = object()
        self._run_token = run_token
        self._collecting = True
        self._collection_started = now

        try:
            if not self.database.is_initialized:
                logger.error("Database not initialized, aborting collection cycle")
                return None
            return await self._collect_all()
        finally:
            # A force-cleared run must not release the flag held by its successor
            if self._run_token is run_token:
                self._collecting = False
                self._collection_started = None
                self._run_token = None

    async def _collect_all(self) -> CollectionResult:
        started_at = utc_now()
        start = time.monotonic()
        succeeded = 0
        failed_symbols: List[str] = []

        batches = chunk(self.symbols, self.batch_size)
        for index, batch in enumerate(batches):
            results = await asyncio.gather(
                *(self.process_symbol(symbol) for symbol in batch),
                return_exceptions=True
            )
            for symbol, result in zip(batch, results):
                if isinstance(result, BaseException):
                    failed_symbols.append(symbol)
                    logger.error(f"Failed to collect {symbol}: {result}")
                else:
                    succeeded += 1

            if index < len(batches) - 1:
                await asyncio.sleep(self.batch_pause)

        self._runs += 1
        self._symbols_succeeded += succeeded
        self._symbols_failed += len(failed_symbols)

        result = CollectionResult(
            started_at=started_at,
            duration_seconds=round(time.monotonic() - start, 3),
            symbols=len(self.symbols),
            succeeded=succeeded,
            failed=len(failed_symbols),
            failed_symbols=failed_symbols,
        )
        self._last_result = result
        logger.info(
            f"Collection cycle finished: {succeeded}/{len(self.symbols)} symbols "
            f"in {result.duration_seconds}s"
        )
        return result

    async def process_symbol(self, symbol: str) -> int:
        """
        Fetch and store one symbol.

        Returns:
            The instrument id

        Raises:
            Whatever the upstream client or storage raised; the caller counts
            it as a failure for this symbol only.
        """
        snapshot = await self.client.get_reliable_stock_data(symbol)
        timestamp = utc_now().replace(microsecond=0)

        async def _write(conn) -> int:
            instrument_id = await self.store.upsert_instrument(snapshot, conn=conn)
            await self.store.upsert_price_point(PricePoint(
                instrument_id=instrument_id,
                price=snapshot.last_price,
                volume=snapshot.volume or 0,
                timestamp=timestamp,
                source=SourceTag.POLLING,
            ), conn=conn)
            await self.store.upsert_aggregate_bar(self._snapshot_bar(instrument_id, snapshot, timestamp), conn=conn)
            return instrument_id

        instrument_id = await self.database.with_transaction(_write)

        if self.enrichment_enabled:
            await self._collect_enrichment(symbol, instrument_id)

        return instrument_id

    @staticmethod
    def _snapshot_bar(instrument_id: int, snapshot: InstrumentSnapshot, timestamp) -> AggregateBar:
        price = snapshot.last_price
        return AggregateBar(
            instrument_id=instrument_id,
            open=snapshot.open if snapshot.open is not None else price,
            high=snapshot.high if snapshot.high is not None else price,
            low=snapshot.low if snapshot.low is not None else price,
            close=price,
            volume=snapshot.volume or 0,
            vwap=snapshot.vwap if snapshot.vwap is not None else price,
            timestamp=timestamp,
            source=SourceTag.POLLING,
        )

    async def _collect_enrichment(self, symbol: str, instrument_id: int) -> None:
        """Fetch and store each enrichment table independently."""
        steps: List[tuple] = [
            ("fundamentals", self.client.get_company_financials, self.store.upsert_fundamentals),
            ("ratios", self.client.get_stock_ratios, self.store.upsert_ratios),
            ("technical indicators", self.client.get_technical_indicators, self.store.upsert_technicals),
        ]
        for name, fetch, write in steps:
            await self._enrich(symbol, instrument_id, name, fetch, write)

    async def _enrich(self, symbol: str, instrument_id: int, name: str,
                      fetch: Callable[[str], Awaitable[Any]],
                      write: Callable[[int, Any], Awaitable[Any]]) -> bool:
        try:
            data = await fetch(symbol)
            if data is None:
                logger.debug(f"No {name} data for {symbol}")
                return False
            await write(instrument_id, data)
            self._enrichment_writes += 1
            return True
        except Exception as e:
            logger.warning(f"Skipping {name} for {symbol}: {e}")
            return False

    def is_healthy(self) -> bool:
        return self._running

    def get_stats(self) -> Dict[str, Any]:
        """Get collector statistics."""
        return {
            "running": self._running,
            "collecting": self._collecting,
            "symbols": len(self.symbols),
            "interval_seconds": self.interval,
            "batch_size": self.batch_size,
            "runs": self._runs,
            "skipped_runs": self._skipped_runs,
            "forced_clears": self._forced_clears,
            "symbols_succeeded": self._symbols_succeeded,
            "symbols_failed": self._symbols_failed,
            "enrichment_writes": self._enrichment_writes,
            "last_result": self._last_result.model_dump(mode="json") if self._last_result else None,
        }
