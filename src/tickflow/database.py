"""
PostgreSQL storage gateway for the tickflow ingestion service.

Owns the single asyncpg pool shared by every collector, creates the
schema, and exposes retrying query/transaction primitives plus a
background health monitor that rebuilds the pool when the store stops
answering. Components hold a reference to the gateway rather than to the
pool, so a rebuilt pool is picked up on their next call.
"""

import asyncio
import asyncpg
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .config import config

logger = logging.getLogger("tickflow.database")

T = TypeVar("T")


class DatabaseError(Exception):
    """Base class for storage gateway errors."""


class DatabaseNotInitializedError(DatabaseError):
    """Raised when an operation needs the pool before initialize() succeeded."""

    def __init__(self, message: str = "Database pool is not initialized"):
        super().__init__(message)


# Errors after which the pool is rebuilt and the operation retried
TRANSIENT_ERRORS = (
    ConnectionError,
    asyncpg.PostgresConnectionError,
    asyncpg.CannotConnectNowError,
    asyncpg.AdminShutdownError,
    asyncpg.InterfaceError,
)


def is_transient_error(error: BaseException) -> bool:
    """Return True when the error means the connection, not the statement, failed."""
    return isinstance(error, TRANSIENT_ERRORS)


class Database:
    """Pooled, retrying PostgreSQL gateway."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
        command_timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        health_check_interval: Optional[float] = None,
    ):
        """
        Initialize the gateway (no connections are opened until initialize()).

        Args:
            database_url: PostgreSQL DSN (defaults to config.DATABASE_URL)
            min_size: Minimum pool size
            max_size: Maximum pool size
            command_timeout: Per-statement timeout in seconds
            retry_attempts: Retries after a transient error before surfacing it
            retry_delay: Seconds to wait before reconnecting and retrying
            health_check_interval: Seconds between background health checks
        """
        self.database_url = database_url or config.DATABASE_URL
        self.min_size = min_size if min_size is not None else config.DB_POOL_MIN_SIZE
        self.max_size = max_size if max_size is not None else config.DB_POOL_MAX_SIZE
        self.command_timeout = command_timeout if command_timeout is not None else config.DB_COMMAND_TIMEOUT
        self.retry_attempts = retry_attempts if retry_attempts is not None else config.DB_RETRY_ATTEMPTS
        self.retry_delay = retry_delay if retry_delay is not None else config.DB_RETRY_DELAY
        self.health_check_interval = (
            health_check_interval if health_check_interval is not None
            else config.DB_HEALTH_CHECK_INTERVAL
        )

        self._pool: Optional[asyncpg.Pool] = None
        self._init_lock = asyncio.Lock()
        self._pool_lock = asyncio.Lock()
        self._initialized = False
        self._generation = 0

        # Health monitor / repair state
        self._health_task: Optional[asyncio.Task] = None
        self._monitoring = False
        self._repairing = False
        self._repair_attempts = 0
        self._last_health_check: Optional[float] = None
        self._last_health_ok: Optional[bool] = None

        # Statistics
        self._operations = 0
        self._transient_failures = 0
        self._reconnects = 0
        self._repairs = 0

    @property
    def pool(self) -> Optional[asyncpg.Pool]:
        return self._pool

    @property
    def is_initialized(self) -> bool:
        return self._initialized and self._pool is not None

    async def _create_pool(self) -> asyncpg.Pool:
        return await asyncpg.create_pool(
            self.database_url,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout,
            statement_cache_size=0,  # Required for pgbouncer compatibility
            server_settings={
                'application_name': 'tickflow',
                'timezone': 'UTC'
            }
        )

    async def initialize(self):
        """Initialize connection pool and create schema."""
        async with self._init_lock:
            if self._initialized:
                return

            if not self.database_url:
                raise ValueError("DATABASE_URL is required")

            try:
                self._pool = await self._create_pool()

                # Test the connection
                async with self._pool.acquire() as conn:
                    await conn.fetchval('SELECT 1')

                await self._create_schema()

                logger.info(f"Database initialized with pool size {self.min_size}-{self.max_size}")
                self._initialized = True

            except Exception as e:
                logger.error(f"Failed to initialize database: {e}")
                if self._pool is not None:
                    self._pool.terminate()
                    self._pool = None
                raise

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise DatabaseNotInitializedError()
        return self._pool

    @asynccontextmanager
    async def get_connection(self):
        """Acquire a raw connection from the current pool (no retry)."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            yield conn

    # ------------------------------------------------------------------
    # Retrying primitives
    # ------------------------------------------------------------------

    async def _run_with_retry(self, operation: Callable[[asyncpg.Connection], Awaitable[T]], description: str) -> T:
        """
        Run an operation on a pooled connection, retrying transient failures.

        On a transient error the gateway waits retry_delay, rebuilds the pool
        once (unless another caller already rebuilt it) and runs the same
        operation again, up to retry_attempts times. A failed rebuild still
        uses up its attempt and leaves the current pool in place.
        """
        attempt = 0
        while True:
            pool = self._require_pool()
            generation = self._generation
            try:
                async with pool.acquire() as conn:
                    result = await operation(conn)
                self._operations += 1
                return result
            except Exception as e:
                if not is_transient_error(e) or attempt >= self.retry_attempts:
                    raise
                attempt += 1
                self._transient_failures += 1
                logger.warning(
                    f"Transient database error during {description} "
                    f"(attempt {attempt}/{self.retry_attempts}): {e}"
                )
                await asyncio.sleep(self.retry_delay)
                try:
                    await self._reconnect(generation)
                except Exception as reconnect_error:
                    logger.warning(f"Pool rebuild failed during {description}, keeping current pool: {reconnect_error}")

    async def query(self, statement: str, *args) -> List[Dict[str, Any]]:
        """Run a statement and return all rows as dicts."""
        async def _op(conn):
            return await conn.fetch(statement, *args)
        rows = await self._run_with_retry(_op, "query")
        return [dict(row) for row in rows]

    async def fetchrow(self, statement: str, *args) -> Optional[Dict[str, Any]]:
        """Run a statement and return the first row, if any."""
        async def _op(conn):
            return await conn.fetchrow(statement, *args)
        row = await self._run_with_retry(_op, "fetchrow")
        return dict(row) if row is not None else None

    async def fetchval(self, statement: str, *args) -> Any:
        """Run a statement and return the first column of the first row."""
        async def _op(conn):
            return await conn.fetchval(statement, *args)
        return await self._run_with_retry(_op, "fetchval")

    async def execute(self, statement: str, *args) -> str:
        """Run a statement and return its status string."""
        async def _op(conn):
            return await conn.execute(statement, *args)
        return await self._run_with_retry(_op, "execute")

    async def with_transaction(self, fn: Callable[[asyncpg.Connection], Awaitable[T]]) -> T:
        """
        Run fn(conn) inside one transaction, retrying the whole transaction on
        transient errors.

        Args:
            fn: Coroutine function receiving the transaction's connection

        Returns:
            Whatever fn returns
        """
        async def _op(conn):
            async with conn.transaction():
                return await fn(conn)
        return await self._run_with_retry(_op, "transaction")

    # ------------------------------------------------------------------
    # Pool replacement, health checks and repair
    # ------------------------------------------------------------------

    async def _reconnect(self, generation: int) -> bool:
        """
        Replace the pool unless it was already replaced since `generation`.

        Returns:
            True if this call replaced the pool
        """
        async with self._pool_lock:
            if generation != self._generation:
                return False

            # The old pool stays in place until its replacement exists
            new_pool = await self._create_pool()
            old_pool, self._pool = self._pool, new_pool
            self._generation += 1
            self._reconnects += 1

            if old_pool is not None:
                try:
                    await asyncio.wait_for(old_pool.close(), timeout=self.command_timeout)
                except Exception as e:
                    logger.warning(f"Closing old pool failed, terminating: {e}")
                    old_pool.terminate()
            logger.info(f"Database pool re-established (generation {self._generation})")
            return True

    async def health_check(self) -> bool:
        """Run SELECT 1 against the current pool."""
        self._last_health_check = time.time()
        if self._pool is None:
            self._last_health_ok = False
            return False
        try:
            async with self._pool.acquire() as conn:
                await asyncio.wait_for(conn.fetchval('SELECT 1'), timeout=self.command_timeout)
            self._last_health_ok = True
            return True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            self._last_health_ok = False
            return False

    def _repair_backoff(self) -> float:
        """Seconds to wait before the next repair attempt; zero on the first."""
        if self._repair_attempts <= 1:
            return 0.0
        return min(self.retry_delay * (2 ** (self._repair_attempts - 1)), self.health_check_interval)

    async def repair(self) -> bool:
        """
        Close and recreate the pool, then verify it.

        Only one repair runs at a time; concurrent calls return False
        immediately. The attempt counter resets when a repair succeeds.

        Returns:
            True if the rebuilt pool passed a health check
        """
        if self._repairing:
            logger.info("Database repair already in progress, skipping")
            return False

        self._repairing = True
        try:
            self._repair_attempts += 1
            backoff = self._repair_backoff()
            if backoff:
                await asyncio.sleep(backoff)

            logger.warning(f"Repairing database pool (attempt {self._repair_attempts})")
            await self._reconnect(self._generation)

            if await self.health_check():
                logger.info(f"Database pool repaired after {self._repair_attempts} attempt(s)")
                self._repair_attempts = 0
                self._repairs += 1
                self._initialized = True
                return True
            return False

        except Exception as e:
            logger.error(f"Database repair failed: {e}")
            return False
        finally:
            self._repairing = False

    async def start_health_monitor(self):
        """Start the periodic health check task."""
        if self._monitoring:
            return
        self._monitoring = True
        self._health_task = asyncio.create_task(self._health_loop())
        logger.info(f"Database health monitor started (interval {self.health_check_interval}s)")

    async def stop_health_monitor(self):
        """Stop the periodic health check task."""
        self._monitoring = False
        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

    async def _health_loop(self):
        while self._monitoring:
            try:
                await asyncio.sleep(self.health_check_interval)
                if not await self.health_check():
                    await self.repair()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in database health loop: {e}")

    async def close(self):
        """Stop monitoring and close the connection pool."""
        await self.stop_health_monitor()
        if self._pool:
            await self._pool.close()
            self._pool = None
            self._initialized = False
            logger.info("Database pool closed")

    def get_stats(self) -> Dict[str, Any]:
        """Get gateway statistics."""
        pool = self._pool
        return {
            "initialized": self.is_initialized,
            "generation": self._generation,
            "pool_size": pool.get_size() if pool is not None else 0,
            "pool_idle": pool.get_idle_size() if pool is not None else 0,
            "operations": self._operations,
            "transient_failures": self._transient_failures,
            "reconnects": self._reconnects,
            "repairs": self._repairs,
            "repairing": self._repairing,
            "repair_attempts": self._repair_attempts,
            "last_health_check": self._last_health_check,
            "last_health_ok": self._last_health_ok,
        }

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def _create_schema(self):
        """Create all tables and indexes (idempotent)."""
        async with self.get_connection() as conn:
            # Create tables in dependency order
            await self._create_instruments_table(conn)
            await self._create_observation_tables(conn)
            await self._create_enrichment_tables(conn)
            logger.info("Database schema ready")

    async def _create_instruments_table(self, conn: asyncpg.Connection):
        await conn.execute('''
            CREATE TABLE IF NOT EXISTS instruments (
                id BIGSERIAL PRIMARY KEY,
                symbol VARCHAR(20) NOT NULL UNIQUE,
                name VARCHAR(255),
                sector VARCHAR(255),
                last_price DECIMAL(18,4),
                change_amount DECIMAL(18,4),
                change_percent DECIMAL(10,4),
                volume BIGINT,
                market_cap DECIMAL(24,2),
                pe_ratio DECIMAL(12,4),
                dividend_yield DECIMAL(10,4),
                high_52week DECIMAL(18,4),
                low_52week DECIMAL(18,4),
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            );
        ''')

    async def _create_observation_tables(self, conn: asyncpg.Connection):
        """Create price_points and aggregate_bars with their retention indexes."""
        await conn.execute('''
            CREATE TABLE IF NOT EXISTS price_points (
                id BIGSERIAL PRIMARY KEY,
                instrument_id BIGINT NOT NULL REFERENCES instruments(id),
                price DECIMAL(18,4) NOT NULL,
                volume BIGINT NOT NULL DEFAULT 0,
                timestamp TIMESTAMPTZ NOT NULL,
                source VARCHAR(16) NOT NULL,    -- 'streaming', 'polling' or 'repair'
                source_rank SMALLINT NOT NULL,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (instrument_id, timestamp)
            );
        ''')

        await conn.execute('''
            CREATE TABLE IF NOT EXISTS aggregate_bars (
                id BIGSERIAL PRIMARY KEY,
                instrument_id BIGINT NOT NULL REFERENCES instruments(id),
                open_price DECIMAL(18,4) NOT NULL,
                high_price DECIMAL(18,4) NOT NULL,
                low_price DECIMAL(18,4) NOT NULL,
                close_price DECIMAL(18,4) NOT NULL,
                volume BIGINT NOT NULL DEFAULT 0,
                volume_weighted_price DECIMAL(18,4),
                timestamp TIMESTAMPTZ NOT NULL,
                source VARCHAR(16) NOT NULL,
                source_rank SMALLINT NOT NULL,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (instrument_id, timestamp)
            );
        ''')

        for table in ("price_points", "aggregate_bars"):
            await conn.execute(f'''
                CREATE INDEX IF NOT EXISTS idx_{table}_source_time
                    ON {table}(source, timestamp, id);
            ''')
            await conn.execute(f'''
                CREATE INDEX IF NOT EXISTS idx_{table}_instrument_time
                    ON {table}(instrument_id, timestamp);
            ''')

    async def _create_enrichment_tables(self, conn: asyncpg.Connection):
        await conn.execute('''
            CREATE TABLE IF NOT EXISTS instrument_fundamentals (
                id BIGSERIAL PRIMARY KEY,
                instrument_id BIGINT NOT NULL REFERENCES instruments(id),
                report_date DATE NOT NULL,
                report_type VARCHAR(20) NOT NULL,
                revenue DECIMAL(24,2),
                net_income DECIMAL(24,2),
                eps DECIMAL(12,4),
                total_assets DECIMAL(24,2),
                total_liabilities DECIMAL(24,2),
                shareholders_equity DECIMAL(24,2),
                operating_cash_flow DECIMAL(24,2),
                shares_outstanding DECIMAL(24,2),
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (instrument_id, report_date, report_type)
            );
        ''')

        await conn.execute('''
            CREATE TABLE IF NOT EXISTS instrument_ratios (
                id BIGSERIAL PRIMARY KEY,
                instrument_id BIGINT NOT NULL REFERENCES instruments(id),
                calculation_date DATE NOT NULL,
                pe_ratio DECIMAL(12,4),
                pb_ratio DECIMAL(12,4),
                ps_ratio DECIMAL(12,4),
                debt_to_equity DECIMAL(12,4),
                roe DECIMAL(12,4),
                profit_margin DECIMAL(12,4),
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (instrument_id, calculation_date)
            );
        ''')

        await conn.execute('''
            CREATE TABLE IF NOT EXISTS technical_indicators (
                id BIGSERIAL PRIMARY KEY,
                instrument_id BIGINT NOT NULL REFERENCES instruments(id),
                calculation_date DATE NOT NULL,
                sma_20 DECIMAL(18,4),
                sma_50 DECIMAL(18,4),
                sma_200 DECIMAL(18,4),
                ema_12 DECIMAL(18,4),
                ema_26 DECIMAL(18,4),
                rsi_14 DECIMAL(10,4),
                macd DECIMAL(18,4),
                macd_signal DECIMAL(18,4),
                macd_histogram DECIMAL(18,4),
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (instrument_id, calculation_date)
            );
        ''')
