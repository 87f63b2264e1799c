"""
Domain queries over the storage gateway: instruments, observations,
enrichment tables and the retention helpers.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import asyncpg

from .database import Database
from .models import (
    AggregateBar,
    FundamentalsReport,
    InstrumentSnapshot,
    PricePoint,
    RatioSnapshot,
    TechnicalSnapshot,
)

logger = logging.getLogger("tickflow.market_store")

# Tables the retention helpers may touch
OBSERVATION_TABLES = ("price_points", "aggregate_bars")


def _check_table(table: str) -> str:
    if table not in OBSERVATION_TABLES:
        raise ValueError(f"Unsupported observation table: {table}")
    return table


def _convert_decimals_to_float(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert Decimal values to float for JSON serialization."""
    for key, value in data.items():
        if isinstance(value, Decimal):
            data[key] = float(value)
    return data


def _parse_row_count(status: str) -> int:
    """Extract the row count from a status string like 'DELETE 250'."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


class MarketDataStore:
    """SQL for the market data tables, executed through the Database gateway."""

    def __init__(self, database: Database):
        self.db = database

    async def _fetchval(self, conn: Optional[asyncpg.Connection], statement: str, *args) -> Any:
        if conn is not None:
            return await conn.fetchval(statement, *args)
        return await self.db.fetchval(statement, *args)

    # ------------------------------------------------------------------
    # Instruments
    # ------------------------------------------------------------------

    async def get_instrument_id(self, symbol: str) -> Optional[int]:
        """Look up an instrument id by symbol (read only)."""
        return await self.db.fetchval(
            'SELECT id FROM instruments WHERE symbol = $1', symbol.upper()
        )

    async def get_instruments(self, symbols: Optional[List[str]] = None) -> Dict[str, Dict[str, Any]]:
        """Get instrument rows keyed by symbol, optionally filtered."""
        if symbols:
            rows = await self.db.query(
                'SELECT * FROM instruments WHERE symbol = ANY($1) ORDER BY symbol',
                [s.upper() for s in symbols]
            )
        else:
            rows = await self.db.query('SELECT * FROM instruments ORDER BY symbol')
        return {row['symbol']: _convert_decimals_to_float(row) for row in rows}

    async def upsert_instrument(self, snapshot: InstrumentSnapshot,
                                conn: Optional[asyncpg.Connection] = None) -> int:
        """
        Insert or update an instrument from a consolidated snapshot.

        Missing (None) fields never blank out stored values.

        Returns:
            The instrument id
        """
        return await self._fetchval(conn, '''
            INSERT INTO instruments (
                symbol, name, sector, last_price, change_amount, change_percent,
                volume, market_cap, pe_ratio, dividend_yield, high_52week, low_52week,
                updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, NOW())
            ON CONFLICT (symbol) DO UPDATE SET
                name = COALESCE(EXCLUDED.name, instruments.name),
                sector = COALESCE(EXCLUDED.sector, instruments.sector),
                last_price = COALESCE(EXCLUDED.last_price, instruments.last_price),
                change_amount = COALESCE(EXCLUDED.change_amount, instruments.change_amount),
                change_percent = COALESCE(EXCLUDED.change_percent, instruments.change_percent),
                volume = COALESCE(EXCLUDED.volume, instruments.volume),
                market_cap = COALESCE(EXCLUDED.market_cap, instruments.market_cap),
                pe_ratio = COALESCE(EXCLUDED.pe_ratio, instruments.pe_ratio),
                dividend_yield = COALESCE(EXCLUDED.dividend_yield, instruments.dividend_yield),
                high_52week = COALESCE(EXCLUDED.high_52week, instruments.high_52week),
                low_52week = COALESCE(EXCLUDED.low_52week, instruments.low_52week),
                updated_at = NOW()
            RETURNING id
        ''',
            snapshot.symbol,
            snapshot.name,
            snapshot.sector,
            snapshot.last_price,
            snapshot.change_amount,
            snapshot.change_percent,
            snapshot.volume,
            snapshot.market_cap,
            snapshot.pe_ratio,
            snapshot.dividend_yield,
            snapshot.high_52week,
            snapshot.low_52week,
        )

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    async def upsert_price_point(self, point: PricePoint,
                                 conn: Optional[asyncpg.Connection] = None) -> Optional[int]:
        """
        Insert a price point, or update price/volume of the existing row at the
        same (instrument, timestamp) when the incoming source ranks at least as
        high as the stored one.

        Returns:
            Row id, or None when a higher-ranked row was left untouched
        """
        return await self._fetchval(conn, '''
            INSERT INTO price_points (instrument_id, price, volume, timestamp, source, source_rank)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (instrument_id, timestamp) DO UPDATE SET
                price = EXCLUDED.price,
                volume = EXCLUDED.volume,
                source = EXCLUDED.source,
                source_rank = EXCLUDED.source_rank
            WHERE price_points.source_rank <= EXCLUDED.source_rank
            RETURNING id
        ''',
            point.instrument_id,
            point.price,
            point.volume,
            point.timestamp,
            point.source.value,
            point.source.rank,
        )

    async def upsert_aggregate_bar(self, bar: AggregateBar,
                                   conn: Optional[asyncpg.Connection] = None) -> Optional[int]:
        """Same precedence rules as upsert_price_point, for OHLCV bars."""
        return await self._fetchval(conn, '''
            INSERT INTO aggregate_bars (
                instrument_id, open_price, high_price, low_price, close_price,
                volume, volume_weighted_price, timestamp, source, source_rank
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (instrument_id, timestamp) DO UPDATE SET
                open_price = EXCLUDED.open_price,
                high_price = EXCLUDED.high_price,
                low_price = EXCLUDED.low_price,
                close_price = EXCLUDED.close_price,
                volume = EXCLUDED.volume,
                volume_weighted_price = EXCLUDED.volume_weighted_price,
                source = EXCLUDED.source,
                source_rank = EXCLUDED.source_rank
            WHERE aggregate_bars.source_rank <= EXCLUDED.source_rank
            RETURNING id
        ''',
            bar.instrument_id,
            bar.open,
            bar.high,
            bar.low,
            bar.close,
            bar.volume,
            bar.vwap,
            bar.timestamp,
            bar.source.value,
            bar.source.rank,
        )

    async def get_price_timestamps(self, instrument_id: int, start: datetime, end: datetime) -> List[datetime]:
        """Get all price point timestamps for an instrument in [start, end], ascending."""
        rows = await self.db.query('''
            SELECT timestamp FROM price_points
            WHERE instrument_id = $1 AND timestamp >= $2 AND timestamp <= $3
            ORDER BY timestamp ASC
        ''', instrument_id, start, end)
        return [row['timestamp'] for row in rows]

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    async def upsert_fundamentals(self, instrument_id: int, report: FundamentalsReport,
                                  conn: Optional[asyncpg.Connection] = None) -> int:
        return await self._fetchval(conn, '''
            INSERT INTO instrument_fundamentals (
                instrument_id, report_date, report_type, revenue, net_income, eps,
                total_assets, total_liabilities, shareholders_equity,
                operating_cash_flow, shares_outstanding, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, NOW())
            ON CONFLICT (instrument_id, report_date, report_type) DO UPDATE SET
                revenue = EXCLUDED.revenue,
                net_income = EXCLUDED.net_income,
                eps = EXCLUDED.eps,
                total_assets = EXCLUDED.total_assets,
                total_liabilities = EXCLUDED.total_liabilities,
                shareholders_equity = EXCLUDED.shareholders_equity,
                operating_cash_flow = EXCLUDED.operating_cash_flow,
                shares_outstanding = EXCLUDED.shares_outstanding,
                updated_at = NOW()
            RETURNING id
        ''',
            instrument_id,
            report.report_date.date(),
            report.report_type,
            report.revenue,
            report.net_income,
            report.eps,
            report.total_assets,
            report.total_liabilities,
            report.shareholders_equity,
            report.operating_cash_flow,
            report.shares_outstanding,
        )

    async def upsert_ratios(self, instrument_id: int, ratios: RatioSnapshot,
                            conn: Optional[asyncpg.Connection] = None) -> int:
        return await self._fetchval(conn, '''
            INSERT INTO instrument_ratios (
                instrument_id, calculation_date, pe_ratio, pb_ratio, ps_ratio,
                debt_to_equity, roe, profit_margin, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, NOW())
            ON CONFLICT (instrument_id, calculation_date) DO UPDATE SET
                pe_ratio = EXCLUDED.pe_ratio,
                pb_ratio = EXCLUDED.pb_ratio,
                ps_ratio = EXCLUDED.ps_ratio,
                debt_to_equity = EXCLUDED.debt_to_equity,
                roe = EXCLUDED.roe,
                profit_margin = EXCLUDED.profit_margin,
                updated_at = NOW()
            RETURNING id
        ''',
            instrument_id,
            ratios.calculation_date.date(),
            ratios.pe_ratio,
            ratios.pb_ratio,
            ratios.ps_ratio,
            ratios.debt_to_equity,
            ratios.roe,
            ratios.profit_margin,
        )

    async def upsert_technicals(self, instrument_id: int, technicals: TechnicalSnapshot,
                                conn: Optional[asyncpg.Connection] = None) -> int:
        return await self._fetchval(conn, '''
            INSERT INTO technical_indicators (
                instrument_id, calculation_date, sma_20, sma_50, sma_200,
                ema_12, ema_26, rsi_14, macd, macd_signal, macd_histogram, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, NOW())
            ON CONFLICT (instrument_id, calculation_date) DO UPDATE SET
                sma_20 = EXCLUDED.sma_20,
                sma_50 = EXCLUDED.sma_50,
                sma_200 = EXCLUDED.sma_200,
                ema_12 = EXCLUDED.ema_12,
                ema_26 = EXCLUDED.ema_26,
                rsi_14 = EXCLUDED.rsi_14,
                macd = EXCLUDED.macd,
                macd_signal = EXCLUDED.macd_signal,
                macd_histogram = EXCLUDED.macd_histogram,
                updated_at = NOW()
            RETURNING id
        ''',
            instrument_id,
            technicals.calculation_date.date(),
            technicals.sma_20,
            technicals.sma_50,
            technicals.sma_200,
            technicals.ema_12,
            technicals.ema_26,
            technicals.rsi_14,
            technicals.macd,
            technicals.macd_signal,
            technicals.macd_histogram,
        )

    # ------------------------------------------------------------------
    # Retention helpers
    # ------------------------------------------------------------------

    async def select_expired_ids(self, table: str, source: str, cutoff: datetime,
                                 after_id: int, limit: int) -> List[int]:
        """
        Select the next page of ids for rows of `source` older than `cutoff`.

        Args:
            table: price_points or aggregate_bars
            source: Source tag value to match
            cutoff: Rows strictly older than this are expired
            after_id: Only ids strictly greater than this are returned
            limit: Page size

        Returns:
            Ascending list of ids (empty when nothing is left)
        """
        table = _check_table(table)
        rows = await self.db.query(f'''
            SELECT id FROM {table}
            WHERE source = $1 AND timestamp < $2 AND id > $3
            ORDER BY id
            LIMIT $4
        ''', source, cutoff, after_id, limit)
        return [row['id'] for row in rows]

    async def delete_ids(self, table: str, ids: List[int], source: str) -> int:
        """
        Delete the given ids that still carry `source`.

        Rows promoted to another source since they were selected are kept.

        Returns:
            Number of rows removed
        """
        table = _check_table(table)
        if not ids:
            return 0
        status = await self.db.execute(
            f'DELETE FROM {table} WHERE id = ANY($1::bigint[]) AND source = $2', ids, source
        )
        return _parse_row_count(status)

    async def get_stats(self) -> Dict[str, Any]:
        """Get row counts per table and per source."""
        instruments = await self.db.fetchval('SELECT COUNT(*) FROM instruments')
        stats: Dict[str, Any] = {"instruments": instruments or 0}
        for table in OBSERVATION_TABLES:
            rows = await self.db.query(f'''
                SELECT source, COUNT(*) AS count, MAX(timestamp) AS latest
                FROM {table}
                GROUP BY source
            ''')
            stats[table] = {
                row['source']: {
                    "count": row['count'],
                    "latest": row['latest'].isoformat() if row['latest'] else None,
                }
                for row in rows
            }
        return stats
