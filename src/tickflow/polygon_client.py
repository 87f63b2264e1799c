"""
REST client for the Polygon market data API.

Thin typed wrapper over snapshot, reference, historical range, financials
and indicator endpoints. Responses are cached in memory for a short TTL;
errors are surfaced to the caller unchanged and never retried here.
"""

import asyncio
import hashlib
import json
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import aiohttp

from .config import config
from .models import (
    CompanyProfile,
    FundamentalsReport,
    Granularity,
    HistoricalBar,
    InstrumentSnapshot,
    QuoteSnapshot,
    RatioSnapshot,
    TechnicalSnapshot,
    datetime_to_ms,
    ms_to_datetime,
    utc_now,
)

logger = logging.getLogger("tickflow.polygon_client")

# Upper bounds (exclusive) of each granularity tier
_GRANULARITY_TIERS = (
    (timedelta(days=1), Granularity.MINUTE),
    (timedelta(days=7), Granularity.HOUR),
    (timedelta(days=30), Granularity.DAY),
    (timedelta(days=365), Granularity.WEEK),
)


def select_granularity(start: datetime, end: datetime) -> Granularity:
    """
    Pick the bar width for a historical request from the span it covers.

    Providers cap the number of bars per call, so wider spans need
    coarser bars.
    """
    span = end - start
    for upper_bound, granularity in _GRANULARITY_TIERS:
        if span < upper_bound:
            return granularity
    return Granularity.MONTH


class PolygonAPIError(Exception):
    """Non-success response from Polygon; message is the provider's own."""

    def __init__(self, status: Optional[int], endpoint: str, message: str):
        self.status = status
        self.endpoint = endpoint
        self.message = message
        super().__init__(f"Polygon API error {status} on {endpoint}: {message}")


def _statement_value(section: Dict[str, Any], *names: str) -> Optional[float]:
    """Read the first present `{name: {"value": x}}` entry of a financial statement."""
    for name in names:
        entry = section.get(name)
        if isinstance(entry, dict) and entry.get("value") is not None:
            return float(entry["value"])
    return None


def _ratio(numerator: Optional[float], denominator: Optional[float]) -> Optional[float]:
    if numerator is None or not denominator:
        return None
    return round(numerator / denominator, 4)


def derive_ratios(report: FundamentalsReport, price: Optional[float],
                  market_cap: Optional[float]) -> RatioSnapshot:
    """
    Compute valuation ratios from a quarterly report and the current quote.

    Quarterly EPS and revenue are annualized (x4) for P/E and P/S.
    """
    annual_eps = report.eps * 4 if report.eps is not None else None
    annual_revenue = report.revenue * 4 if report.revenue is not None else None
    return RatioSnapshot(
        calculation_date=report.report_date,
        pe_ratio=_ratio(price, annual_eps),
        pb_ratio=_ratio(market_cap, report.shareholders_equity),
        ps_ratio=_ratio(market_cap, annual_revenue),
        debt_to_equity=_ratio(report.total_liabilities, report.shareholders_equity),
        roe=_ratio(report.net_income, report.shareholders_equity),
        profit_margin=_ratio(report.net_income, report.revenue),
    )


class PolygonClient:
    """Async REST client for Polygon with a TTL response cache."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        historical_timeout: Optional[float] = None,
        cache_ttl_seconds: Optional[float] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: Polygon API key (defaults to config.POLYGON_API_KEY)
            base_url: REST base URL
            timeout: Timeout for general calls in seconds
            historical_timeout: Timeout for historical range calls in seconds
            cache_ttl_seconds: How long responses stay cached
        """
        self.api_key = api_key or config.POLYGON_API_KEY
        self.base_url = (base_url or config.POLYGON_REST_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else config.POLYGON_TIMEOUT
        self.historical_timeout = (
            historical_timeout if historical_timeout is not None
            else config.POLYGON_HISTORICAL_TIMEOUT
        )
        self._cache_ttl_seconds = (
            cache_ttl_seconds if cache_ttl_seconds is not None else config.POLYGON_CACHE_TTL
        )
        self._cache: Dict[str, tuple] = {}
        self._session: Optional[aiohttp.ClientSession] = None

        # Statistics
        self._requests = 0
        self._cache_hits = 0
        self._errors = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=20, limit_per_host=20)
            self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _cache_key(self, endpoint: str, params: Dict[str, Any]) -> str:
        """Generate a deterministic cache key from endpoint and parameters."""
        key_data = json.dumps({"endpoint": endpoint, "params": params}, sort_keys=True, default=str)
        return hashlib.md5(key_data.encode()).hexdigest()

    def _get_cached(self, key: str) -> Optional[Dict[str, Any]]:
        """Get a cached response if it exists and hasn't expired."""
        if key in self._cache:
            ts, result = self._cache[key]
            if time.time() - ts < self._cache_ttl_seconds:
                return result
            else:
                del self._cache[key]
        return None

    def _set_cache(self, key: str, result: Dict[str, Any]) -> None:
        """Store a response in the cache."""
        self._cache[key] = (time.time(), result)
        # Prune expired entries periodically (keep cache small)
        if len(self._cache) > 200:
            now = time.time()
            self._cache = {
                k: (ts, v) for k, (ts, v) in self._cache.items()
                if now - ts < self._cache_ttl_seconds
            }

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None,
                       timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        GET an endpoint, serving from cache when possible.

        Args:
            endpoint: Path below the base URL
            params: Query parameters (apiKey is added here)
            timeout: Request timeout in seconds (defaults to self.timeout)

        Returns:
            Decoded JSON body

        Raises:
            PolygonAPIError: On a non-200 response
            asyncio.TimeoutError: When the request exceeds the timeout
            ValueError: When no API key is configured
        """
        params = dict(params or {})
        key = self._cache_key(endpoint, params)
        cached = self._get_cached(key)
        if cached is not None:
            self._cache_hits += 1
            return cached

        if not self.api_key:
            raise ValueError("Polygon API key not configured. Set POLYGON_API_KEY.")

        session = await self._get_session()
        url = f"{self.base_url}{endpoint}"
        query = {**params, "apiKey": self.api_key}
        request_timeout = aiohttp.ClientTimeout(total=timeout if timeout is not None else self.timeout)

        self._requests += 1
        try:
            async with session.get(url, params=query, timeout=request_timeout) as response:
                if response.status != 200:
                    body = await response.text()
                    raise PolygonAPIError(response.status, endpoint, self._error_message(body))
                data = await response.json()
        except (PolygonAPIError, asyncio.TimeoutError) as e:
            self._errors += 1
            logger.warning(f"Polygon request failed ({endpoint}): {e!r}")
            raise

        self._set_cache(key, data)
        return data

    @staticmethod
    def _error_message(body: str) -> str:
        """Pull the provider's error text out of a response body."""
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, TypeError):
            return body
        if isinstance(payload, dict):
            return payload.get("error") or payload.get("message") or body
        return body

    # ------------------------------------------------------------------
    # Core endpoints
    # ------------------------------------------------------------------

    async def get_snapshot(self, symbol: str) -> QuoteSnapshot:
        """
        Get the previous-session aggregate for a symbol.

        Raises:
            PolygonAPIError: When the provider returns no results
        """
        endpoint = f"/v2/aggs/ticker/{symbol}/prev"
        data = await self._request(endpoint, {"adjusted": "true"})
        results = data.get("results") or []
        if not results:
            raise PolygonAPIError(200, endpoint, f"No snapshot results for {symbol}")
        bar = results[0]
        return QuoteSnapshot(
            symbol=data.get("ticker") or symbol,
            open=bar["o"],
            high=bar["h"],
            low=bar["l"],
            close=bar["c"],
            volume=bar.get("v"),
            vwap=bar.get("vw"),
            timestamp=ms_to_datetime(bar["t"]) if bar.get("t") else None,
        )

    async def get_profile(self, symbol: str) -> CompanyProfile:
        """Get name, sector and market cap for a symbol."""
        endpoint = f"/v3/reference/tickers/{symbol}"
        data = await self._request(endpoint)
        results = data.get("results")
        if not isinstance(results, dict):
            raise PolygonAPIError(200, endpoint, f"No reference data for {symbol}")
        return CompanyProfile(
            symbol=symbol,
            name=results.get("name"),
            sector=results.get("sic_description"),
            market_cap=results.get("market_cap"),
        )

    async def get_reliable_stock_data(self, symbol: str) -> InstrumentSnapshot:
        """Consolidated snapshot + profile used to upsert an instrument."""
        quote = await self.get_snapshot(symbol)
        profile = await self.get_profile(symbol)
        return InstrumentSnapshot.from_upstream(quote, profile)

    async def get_historical_range(self, symbol: str, granularity: Granularity,
                                   start: datetime, end: datetime) -> List[HistoricalBar]:
        """
        Get bars for [start, end] at the given granularity.

        Bounds are sent as epoch milliseconds so intraday spans are exact.
        """
        endpoint = (
            f"/v2/aggs/ticker/{symbol}/range/1/{granularity.value}/"
            f"{datetime_to_ms(start)}/{datetime_to_ms(end)}"
        )
        data = await self._request(
            endpoint,
            {"adjusted": "true", "sort": "asc", "limit": 5000},
            timeout=self.historical_timeout,
        )
        return [HistoricalBar.from_polygon(item) for item in data.get("results") or []]

    # ------------------------------------------------------------------
    # Enrichment endpoints
    # ------------------------------------------------------------------

    async def get_company_financials(self, symbol: str) -> Optional[FundamentalsReport]:
        """Get the latest quarterly report, or None when the provider has none."""
        data = await self._request("/vX/reference/financials", {
            "ticker": symbol,
            "timeframe": "quarterly",
            "order": "desc",
            "sort": "period_of_report_date",
            "limit": 1,
        })
        results = data.get("results") or []
        if not results:
            return None

        report = results[0]
        report_date = report.get("end_date") or report.get("filing_date")
        if not report_date:
            return None

        financials = report.get("financials") or {}
        income = financials.get("income_statement") or {}
        balance = financials.get("balance_sheet") or {}
        cash_flow = financials.get("cash_flow_statement") or {}

        return FundamentalsReport(
            report_date=datetime.fromisoformat(report_date),
            report_type=report.get("timeframe") or "quarterly",
            revenue=_statement_value(income, "revenues"),
            net_income=_statement_value(income, "net_income_loss", "net_income_loss_attributable_to_parent"),
            eps=_statement_value(income, "basic_earnings_per_share", "diluted_earnings_per_share"),
            total_assets=_statement_value(balance, "assets"),
            total_liabilities=_statement_value(balance, "liabilities"),
            shareholders_equity=_statement_value(balance, "equity", "equity_attributable_to_parent"),
            operating_cash_flow=_statement_value(cash_flow, "net_cash_flow_from_operating_activities"),
            shares_outstanding=_statement_value(income, "basic_average_shares"),
        )

    async def get_stock_ratios(self, symbol: str) -> Optional[RatioSnapshot]:
        """Derive ratios from the latest report and current snapshot; None without a report."""
        report = await self.get_company_financials(symbol)
        if report is None:
            return None
        quote = await self.get_snapshot(symbol)
        profile = await self.get_profile(symbol)
        ratios = derive_ratios(report, quote.price, profile.market_cap)
        ratios.calculation_date = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
        return ratios

    async def _latest_indicator(self, indicator: str, symbol: str,
                                window: Optional[int] = None) -> Optional[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "timespan": "day",
            "series_type": "close",
            "order": "desc",
            "limit": 1,
        }
        if window is not None:
            params["window"] = window
        data = await self._request(f"/v1/indicators/{indicator}/{symbol}", params)
        values = (data.get("results") or {}).get("values") or []
        return values[0] if values else None

    async def get_technical_indicators(self, symbol: str) -> Optional[TechnicalSnapshot]:
        """Get the latest daily SMA/EMA/RSI/MACD values; None when nothing is returned."""
        snapshot = TechnicalSnapshot(
            calculation_date=utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
        )

        for field, indicator, window in (
            ("sma_20", "sma", 20),
            ("sma_50", "sma", 50),
            ("sma_200", "sma", 200),
            ("ema_12", "ema", 12),
            ("ema_26", "ema", 26),
            ("rsi_14", "rsi", 14),
        ):
            latest = await self._latest_indicator(indicator, symbol, window)
            if latest is not None:
                setattr(snapshot, field, latest.get("value"))

        macd = await self._latest_indicator("macd", symbol)
        if macd is not None:
            snapshot.macd = macd.get("value")
            snapshot.macd_signal = macd.get("signal")
            snapshot.macd_histogram = macd.get("histogram")

        if not snapshot.has_values():
            return None
        return snapshot

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics."""
        return {
            "requests": self._requests,
            "cache_hits": self._cache_hits,
            "errors": self._errors,
            "cache_entries": len(self._cache),
            "cache_ttl_seconds": self._cache_ttl_seconds,
        }
