"""
Gap detection and repair for stored price history.

For each tracked symbol the orchestrator reads the price timestamps in a
window, derives the spans with no coverage, fetches replacement bars for
each span from Polygon and upserts them tagged as repair data. Runs are
tracked as in-memory BackfillJob records that callers poll for progress.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .config import config
from .database import Database, DatabaseNotInitializedError, is_transient_error
from .market_store import MarketDataStore
from .models import (
    AggregateBar,
    BackfillError,
    BackfillJob,
    Gap,
    JobStatus,
    PricePoint,
    SourceTag,
    utc_now,
)
from .polygon_client import PolygonClient, select_granularity

logger = logging.getLogger("tickflow.backfill")

EDGE_MARGIN = timedelta(minutes=1)


class BackfillAlreadyRunningError(Exception):
    """A non-forced backfill was requested while another job is active."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Backfill job {job_id} is already running")


def detect_gaps(
    timestamps: List[datetime],
    start: datetime,
    end: datetime,
    threshold: timedelta,
    symbol: str,
    instrument_id: Optional[int] = None,
) -> List[Gap]:
    """
    Find uncovered spans in an ascending list of timestamps.

    - No timestamps: the whole window is one gap.
    - Consecutive points further apart than `threshold` produce a gap from
      one minute after the earlier point to one minute before the later.
    - Leading edge: window start to one minute before the first point, when
      that distance exceeds `threshold`.
    - Trailing edge: one minute after the last point to window end, whenever
      the tail is longer than the one-minute margin.

    Args:
        timestamps: Ascending observation times inside [start, end]
        start: Window start
        end: Window end
        threshold: Largest allowed distance between points
        symbol: Symbol the gaps belong to
        instrument_id: Instrument id the gaps belong to

    Returns:
        Gaps in chronological order
    """
    def _gap(gap_start: datetime, gap_end: datetime) -> Gap:
        return Gap(instrument_id=instrument_id, symbol=symbol, start_time=gap_start, end_time=gap_end)

    if not timestamps:
        return [_gap(start, end)]

    gaps: List[Gap] = []

    first = timestamps[0]
    if first - start > threshold:
        gaps.append(_gap(start, first - EDGE_MARGIN))

    for prev, curr in zip(timestamps, timestamps[1:]):
        if curr - prev > threshold:
            gap_start, gap_end = prev + EDGE_MARGIN, curr - EDGE_MARGIN
            if gap_start < gap_end:
                gaps.append(_gap(gap_start, gap_end))

    last = timestamps[-1]
    if end - last > EDGE_MARGIN:
        gaps.append(_gap(last + EDGE_MARGIN, end))

    return gaps


class BackfillOrchestrator:
    """
    Scheduled and on-demand gap repair with job tracking.

    Gaps are processed one at a time with a pause in between to cap the
    upstream request rate.
    """

    def __init__(
        self,
        database: Database,
        store: MarketDataStore,
        client: PolygonClient,
        symbols: Optional[List[str]] = None,
        interval_minutes: Optional[float] = None,
        initial_delay: Optional[float] = None,
        lookback_days: Optional[int] = None,
        gap_threshold_minutes: Optional[float] = None,
        gap_delay: Optional[float] = None,
        max_finished_jobs: Optional[int] = None,
    ):
        self.database = database
        self.store = store
        self.client = client
        self.symbols = [s.upper() for s in (symbols or config.TICKERS)]
        self.interval_minutes = (
            interval_minutes if interval_minutes is not None else config.BACKFILL_INTERVAL_MINUTES
        )
        self.initial_delay = initial_delay if initial_delay is not None else config.BACKFILL_INITIAL_DELAY
        self.lookback_days = lookback_days if lookback_days is not None else config.BACKFILL_LOOKBACK_DAYS
        self.gap_threshold = timedelta(
            minutes=gap_threshold_minutes if gap_threshold_minutes is not None
            else config.BACKFILL_GAP_THRESHOLD_MINUTES
        )
        self.gap_delay = gap_delay if gap_delay is not None else config.BACKFILL_GAP_DELAY
        self.max_finished_jobs = (
            max_finished_jobs if max_finished_jobs is not None else config.BACKFILL_MAX_FINISHED_JOBS
        )

        # Insertion-ordered, so the oldest jobs come first
        self._jobs: Dict[str, BackfillJob] = {}
        self._job_tasks: Dict[str, asyncio.Task] = {}

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._schedule_task: Optional[asyncio.Task] = None

        # Statistics
        self._jobs_started = 0
        self._jobs_completed = 0
        self._jobs_failed = 0
        self._gaps_repaired = 0
        self._points_written = 0
        self._scheduled_skips = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the scheduled backfill loop."""
        if self._running:
            logger.warning("BackfillOrchestrator is already running")
            return

        self._running = True
        self._shutdown_event.clear()
        self._schedule_task = asyncio.create_task(self._schedule_loop())
        logger.info(
            f"BackfillOrchestrator started: every {self.interval_minutes} min, "
            f"first run in {self.initial_delay}s"
        )

    async def stop(self) -> None:
        """Stop scheduling and cancel in-flight jobs."""
        if not self._running and not self._job_tasks:
            return

        logger.info("Stopping BackfillOrchestrator...")
        self._running = False
        self._shutdown_event.set()

        tasks = [t for t in [self._schedule_task, *self._job_tasks.values()] if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._schedule_task = None
        self._job_tasks.clear()

        logger.info(
            f"BackfillOrchestrator stopped. Final stats: jobs={self._jobs_started}, "
            f"gaps_repaired={self._gaps_repaired}, points={self._points_written}"
        )

    async def _wait_or_shutdown(self, seconds: float) -> bool:
        """Sleep for `seconds`; returns True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _schedule_loop(self) -> None:
        if await self._wait_or_shutdown(self.initial_delay):
            return
        while self._running:
            await self._run_scheduled()
            if await self._wait_or_shutdown(self.interval_minutes * 60):
                return

    async def _run_scheduled(self) -> None:
        try:
            job = await self.run_backfill()
            logger.info(
                f"Scheduled backfill {job.id} {job.status.value}: "
                f"{job.processed_gaps}/{job.total_gaps} gaps, {len(job.errors)} errors"
            )
        except BackfillAlreadyRunningError as e:
            self._scheduled_skips += 1
            logger.info(f"Skipping scheduled backfill: {e}")
        except Exception as e:
            logger.error(f"Scheduled backfill failed: {e}")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _create_job(
        self,
        symbols: Optional[List[str]],
        start: Optional[datetime],
        end: Optional[datetime],
        force: bool,
        job_id: Optional[str],
    ) -> BackfillJob:
        if not force:
            for active in self._jobs.values():
                if not active.is_terminal:
                    raise BackfillAlreadyRunningError(active.id)

        end = end or utc_now()
        start = start or end - timedelta(days=self.lookback_days)
        if start >= end:
            raise ValueError("Backfill start must be before end")

        job_id = job_id or f"backfill-{uuid.uuid4().hex[:12]}"
        if job_id in self._jobs:
            raise ValueError(f"Backfill job id {job_id} already exists")

        job = BackfillJob(
            id=job_id,
            symbols=[s.upper() for s in symbols] if symbols else list(self.symbols),
            start_time=start,
            end_time=end,
            forced=force,
        )
        self._jobs[job.id] = job
        self._jobs_started += 1
        self._evict_finished_jobs()
        logger.info(
            f"Created backfill job {job.id} for {len(job.symbols)} symbols "
            f"({start.isoformat()} -> {end.isoformat()}, force={force})"
        )
        return job

    def _evict_finished_jobs(self) -> None:
        finished = [job_id for job_id, job in self._jobs.items() if job.is_terminal]
        excess = len(finished) - self.max_finished_jobs
        for job_id in finished[:max(excess, 0)]:
            del self._jobs[job_id]

    def trigger_backfill(
        self,
        symbols: Optional[List[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        force: bool = False,
        job_id: Optional[str] = None,
    ) -> str:
        """
        Start a backfill job in the background.

        Args:
            symbols: Symbols to repair (defaults to all tracked symbols)
            start: Window start (defaults to end minus the lookback)
            end: Window end (defaults to now)
            force: Start even if another job is active
            job_id: Caller-supplied id

        Returns:
            The job id, immediately

        Raises:
            BackfillAlreadyRunningError: When not forced and a job is active
            ValueError: On an empty window or a duplicate job id
        """
        job = self._create_job(symbols, start, end, force, job_id)
        task = asyncio.create_task(self._execute(job))
        self._job_tasks[job.id] = task
        task.add_done_callback(lambda _: self._job_tasks.pop(job.id, None))
        return job.id

    async def run_backfill(
        self,
        symbols: Optional[List[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        force: bool = False,
        job_id: Optional[str] = None,
    ) -> BackfillJob:
        """Run a backfill job to completion and return its final snapshot."""
        job = self._create_job(symbols, start, end, force, job_id)
        await self._execute(job)
        return job.snapshot()

    def get_backfill_status(self, job_id: str) -> Optional[BackfillJob]:
        """Snapshot of a job, or None if unknown (or evicted)."""
        job = self._jobs.get(job_id)
        return job.snapshot() if job else None

    def list_active_jobs(self) -> List[BackfillJob]:
        """Snapshots of every job that has not reached a terminal status."""
        return [job.snapshot() for job in self._jobs.values() if not job.is_terminal]

    def list_jobs(self) -> List[BackfillJob]:
        return [job.snapshot() for job in self._jobs.values()]

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _execute(self, job: BackfillJob) -> None:
        try:
            if not self.database.is_initialized:
                raise DatabaseNotInitializedError()

            job.status = JobStatus.IDENTIFYING_GAPS
            gaps = await self.identify_gaps(job)

            job.set_total_gaps(len(gaps))
            job.status = JobStatus.PROCESSING
            logger.info(f"Backfill {job.id}: {len(gaps)} gaps to process")

            for index, gap in enumerate(gaps):
                if index > 0:
                    await asyncio.sleep(self.gap_delay)

                error = None
                try:
                    written = await self.backfill_gap(gap)
                    self._gaps_repaired += 1
                    self._points_written += written
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(
                        f"Backfill {job.id}: gap {gap.symbol} "
                        f"{gap.start_time.isoformat()} -> {gap.end_time.isoformat()} failed: {e}"
                    )
                    error = BackfillError(
                        symbol=gap.symbol,
                        start_time=gap.start_time,
                        end_time=gap.end_time,
                        message=str(e),
                    )
                job.record_gap_processed(error)

            job.mark_completed()
            self._jobs_completed += 1
            logger.info(
                f"Backfill {job.id} completed: {job.processed_gaps}/{job.total_gaps} gaps, "
                f"{len(job.errors)} errors"
            )

        except asyncio.CancelledError:
            job.mark_failed("Backfill cancelled")
            self._jobs_failed += 1
            raise
        except Exception as e:
            job.mark_failed(str(e))
            self._jobs_failed += 1
            logger.error(f"Backfill {job.id} failed: {e}")

    async def identify_gaps(self, job: BackfillJob) -> List[Gap]:
        """
        Detect gaps for every symbol of a job.

        Symbols without an instrument row are created from upstream data
        first. Storage outages propagate (and fail the job); any other
        per-symbol problem is recorded on the job and the symbol skipped.
        """
        instruments = await self.store.get_instruments(job.symbols)
        gaps: List[Gap] = []

        for symbol in job.symbols:
            try:
                instrument = instruments.get(symbol)
                if instrument is not None:
                    instrument_id = instrument["id"]
                else:
                    instrument_id = await self._create_instrument(symbol)

                timestamps = await self.store.get_price_timestamps(
                    instrument_id, job.start_time, job.end_time
                )
                gaps.extend(detect_gaps(
                    timestamps, job.start_time, job.end_time,
                    self.gap_threshold, symbol, instrument_id
                ))
            except DatabaseNotInitializedError:
                raise
            except Exception as e:
                if is_transient_error(e):
                    raise
                logger.warning(f"Backfill {job.id}: gap detection for {symbol} failed: {e}")
                job.errors.append(BackfillError(
                    symbol=symbol,
                    start_time=job.start_time,
                    end_time=job.end_time,
                    message=str(e),
                ))

        return gaps

    async def _create_instrument(self, symbol: str) -> int:
        snapshot = await self.client.get_reliable_stock_data(symbol)
        instrument_id = await self.store.upsert_instrument(snapshot)
        logger.info(f"Created instrument {symbol} (id {instrument_id}) for backfill")
        return instrument_id

    async def backfill_gap(self, gap: Gap) -> int:
        """
        Fetch and store replacement data for one gap in a single transaction.

        Returns:
            Number of upstream bars applied
        """
        granularity = select_granularity(gap.start_time, gap.end_time)
        bars = await self.client.get_historical_range(gap.symbol, granularity, gap.start_time, gap.end_time)
        if not bars:
            logger.info(f"No upstream data for {gap.symbol} gap {gap.start_time.isoformat()}")
            return 0

        write_bars = not granularity.is_finest

        async def _write(conn) -> int:
            for bar in bars:
                await self.store.upsert_price_point(PricePoint(
                    instrument_id=gap.instrument_id,
                    price=bar.close,
                    volume=bar.volume,
                    timestamp=bar.timestamp,
                    source=SourceTag.REPAIR,
                ), conn=conn)
                if write_bars:
                    await self.store.upsert_aggregate_bar(AggregateBar(
                        instrument_id=gap.instrument_id,
                        open=bar.open,
                        high=bar.high,
                        low=bar.low,
                        close=bar.close,
                        volume=bar.volume,
                        vwap=bar.vwap,
                        timestamp=bar.timestamp,
                        source=SourceTag.REPAIR,
                    ), conn=conn)
            return len(bars)

        written = await self.database.with_transaction(_write)
        logger.debug(f"Backfilled {written} {granularity.value} bars for {gap.symbol}")
        return written

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics."""
        return {
            "running": self._running,
            "jobs_tracked": len(self._jobs),
            "active_jobs": sum(1 for job in self._jobs.values() if not job.is_terminal),
            "jobs_started": self._jobs_started,
            "jobs_completed": self._jobs_completed,
            "jobs_failed": self._jobs_failed,
            "gaps_repaired": self._gaps_repaired,
            "points_written": self._points_written,
            "scheduled_skips": self._scheduled_skips,
            "interval_minutes": self.interval_minutes,
            "gap_threshold_minutes": self.gap_threshold.total_seconds() / 60,
        }
