"""
Pydantic models for Polygon stream events, upstream snapshots, stored
observations and backfill job tracking.
"""

from enum import Enum
from typing import Optional, List, Any, Dict, Union
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ms_to_datetime(ms: Union[int, float]) -> datetime:
    """Convert an epoch-milliseconds value to an aware UTC datetime."""
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def datetime_to_ms(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class SourceTag(str, Enum):
    """Which pipeline produced an observation row."""
    STREAMING = "streaming"
    POLLING = "polling"
    REPAIR = "repair"

    @property
    def rank(self) -> int:
        """Priority of the source; a lower rank never overwrites a higher one."""
        return _SOURCE_RANKS[self]


_SOURCE_RANKS = {
    SourceTag.STREAMING: 1,
    SourceTag.POLLING: 2,
    SourceTag.REPAIR: 3,
}


class Granularity(str, Enum):
    """Bar width for historical range requests."""
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @property
    def is_finest(self) -> bool:
        return self is Granularity.MINUTE


class StreamState(str, Enum):
    """Connection state of the streaming collector."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    SUBSCRIBED = "subscribed"
    STREAMING = "streaming"


class JobStatus(str, Enum):
    """Lifecycle of a backfill job."""
    RUNNING = "running"
    IDENTIFYING_GAPS = "identifying_gaps"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# ---------------------------------------------------------------------------
# Upstream snapshots
# ---------------------------------------------------------------------------

class QuoteSnapshot(BaseModel):
    """Previous-session aggregate for one symbol, as returned by the snapshot endpoint."""
    symbol: str = Field(..., description="Ticker symbol")
    open: float = Field(..., description="Session open")
    high: float = Field(..., description="Session high")
    low: float = Field(..., description="Session low")
    close: float = Field(..., description="Session close, used as the current price")
    volume: int = Field(default=0, description="Session volume")
    vwap: Optional[float] = Field(None, description="Volume weighted average price")
    timestamp: Optional[datetime] = Field(None, description="Bar start time reported by the provider")

    @field_validator('volume', mode='before')
    @classmethod
    def coerce_volume(cls, v):
        """Providers report volume as a float; store it as an integer share count."""
        if v is None:
            return 0
        return int(v)

    @property
    def price(self) -> float:
        return self.close

    @property
    def change_amount(self) -> float:
        return round(self.close - self.open, 4)

    @property
    def change_percent(self) -> float:
        if not self.open:
            return 0.0
        return round((self.close - self.open) / self.open * 100, 4)


class CompanyProfile(BaseModel):
    """Reference data for a symbol."""
    symbol: str = Field(..., description="Ticker symbol")
    name: Optional[str] = Field(None, description="Company name")
    sector: Optional[str] = Field(None, description="Industry/sector description")
    market_cap: Optional[float] = Field(None, description="Market capitalization in USD")


class InstrumentSnapshot(BaseModel):
    """Consolidated instrument state used to upsert an instruments row."""
    symbol: str = Field(..., description="Ticker symbol (unique key)")
    name: Optional[str] = None
    sector: Optional[str] = None
    last_price: Optional[float] = None
    change_amount: Optional[float] = None
    change_percent: Optional[float] = None
    volume: Optional[int] = None
    market_cap: Optional[float] = None
    pe_ratio: Optional[float] = None
    dividend_yield: Optional[float] = None
    high_52week: Optional[float] = None
    low_52week: Optional[float] = None

    # Session aggregate carried along so polling can write its bar
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    vwap: Optional[float] = None

    @field_validator('symbol')
    @classmethod
    def normalize_symbol(cls, v):
        return v.strip().upper()

    @classmethod
    def from_upstream(cls, quote: QuoteSnapshot, profile: Optional[CompanyProfile] = None) -> "InstrumentSnapshot":
        """Merge a snapshot and an optional profile into one record."""
        return cls(
            symbol=quote.symbol,
            name=profile.name if profile and profile.name else quote.symbol,
            sector=profile.sector if profile else None,
            last_price=quote.price,
            change_amount=quote.change_amount,
            change_percent=quote.change_percent,
            volume=quote.volume,
            market_cap=profile.market_cap if profile else None,
            open=quote.open,
            high=quote.high,
            low=quote.low,
            vwap=quote.vwap,
        )


class HistoricalBar(BaseModel):
    """One bar from a historical range request."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0
    vwap: Optional[float] = None

    @classmethod
    def from_polygon(cls, raw: Dict[str, Any]) -> "HistoricalBar":
        """Build from a Polygon aggregate result (t, o, h, l, c, v, vw)."""
        return cls(
            timestamp=ms_to_datetime(raw["t"]),
            open=raw["o"],
            high=raw["h"],
            low=raw["l"],
            close=raw["c"],
            volume=int(raw.get("v") or 0),
            vwap=raw.get("vw"),
        )


# ---------------------------------------------------------------------------
# Stored observations
# ---------------------------------------------------------------------------

class PricePoint(BaseModel):
    """One trade/quote observation keyed by (instrument_id, timestamp)."""
    instrument_id: int
    price: float
    volume: int = 0
    timestamp: datetime
    source: SourceTag

    @field_validator('price', mode='before')
    @classmethod
    def convert_decimal(cls, v):
        if isinstance(v, Decimal):
            return float(v)
        return v


class AggregateBar(BaseModel):
    """One OHLCV bar keyed by (instrument_id, timestamp)."""
    instrument_id: int
    open: float
    high: float
    low: float
    close: float
    volume: int = 0
    vwap: Optional[float] = None
    timestamp: datetime
    source: SourceTag


# ---------------------------------------------------------------------------
# Enrichment records
# ---------------------------------------------------------------------------

class FundamentalsReport(BaseModel):
    """Latest financial report, keyed by (report_date, report_type)."""
    report_date: datetime
    report_type: str = Field(default="quarterly")
    revenue: Optional[float] = None
    net_income: Optional[float] = None
    eps: Optional[float] = None
    total_assets: Optional[float] = None
    total_liabilities: Optional[float] = None
    shareholders_equity: Optional[float] = None
    operating_cash_flow: Optional[float] = None
    shares_outstanding: Optional[float] = None


class RatioSnapshot(BaseModel):
    """Valuation ratios keyed by calculation_date."""
    calculation_date: datetime
    pe_ratio: Optional[float] = None
    pb_ratio: Optional[float] = None
    ps_ratio: Optional[float] = None
    debt_to_equity: Optional[float] = None
    roe: Optional[float] = None
    profit_margin: Optional[float] = None


class TechnicalSnapshot(BaseModel):
    """Technical indicator values keyed by calculation_date."""
    calculation_date: datetime
    sma_20: Optional[float] = None
    sma_50: Optional[float] = None
    sma_200: Optional[float] = None
    ema_12: Optional[float] = None
    ema_26: Optional[float] = None
    rsi_14: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_histogram: Optional[float] = None

    def has_values(self) -> bool:
        return any(
            value is not None
            for key, value in self.model_dump().items()
            if key != "calculation_date"
        )


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

class TradeEvent(BaseModel):
    """Polygon trade event (ev=T)."""
    model_config = ConfigDict(populate_by_name=True)

    symbol: str = Field(..., alias="sym")
    price: float = Field(..., alias="p")
    size: int = Field(default=0, alias="s")
    timestamp_ms: int = Field(..., alias="t")

    @property
    def timestamp(self) -> datetime:
        return ms_to_datetime(self.timestamp_ms)


class BarEvent(BaseModel):
    """Polygon aggregate event (ev=A per second, ev=AM per minute)."""
    model_config = ConfigDict(populate_by_name=True)

    symbol: str = Field(..., alias="sym")
    open: float = Field(..., alias="o")
    high: float = Field(..., alias="h")
    low: float = Field(..., alias="l")
    close: float = Field(..., alias="c")
    volume: int = Field(default=0, alias="v")
    vwap: Optional[float] = Field(None, alias="vw")
    start_ms: int = Field(..., alias="s")
    end_ms: Optional[int] = Field(None, alias="e")

    @property
    def timestamp(self) -> datetime:
        return ms_to_datetime(self.start_ms)


class StatusEvent(BaseModel):
    """Provider status message (connected, auth_success, auth_failed, success)."""
    status: str
    message: Optional[str] = None


class UnknownEvent(BaseModel):
    """Anything the dispatcher has no handler for."""
    ev: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


StreamEvent = Union[TradeEvent, BarEvent, StatusEvent, UnknownEvent]

_EVENT_MODELS = {
    "T": TradeEvent,
    "A": BarEvent,
    "AM": BarEvent,
    "status": StatusEvent,
}


def parse_stream_event(payload: Dict[str, Any]) -> StreamEvent:
    """
    Convert one raw stream payload into a typed event.

    Args:
        payload: Decoded JSON object from the stream

    Returns:
        The typed event; UnknownEvent for unrecognized `ev` tags

    Raises:
        pydantic.ValidationError: when a known event is missing required fields
        TypeError: when the payload is not a JSON object
    """
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object, got {type(payload).__name__}")
    ev = payload.get("ev")
    model = _EVENT_MODELS.get(ev)
    if model is None:
        return UnknownEvent(ev=ev, payload=payload)
    return model.model_validate(payload)


# ---------------------------------------------------------------------------
# Backfill tracking
# ---------------------------------------------------------------------------

class Gap(BaseModel):
    """A span of missing price coverage for one instrument."""
    instrument_id: Optional[int] = None
    symbol: str
    start_time: datetime
    end_time: datetime

    @property
    def span(self) -> timedelta:
        return self.end_time - self.start_time


class BackfillError(BaseModel):
    """Per-gap failure recorded on a job."""
    symbol: str
    start_time: datetime
    end_time: datetime
    message: str


class BackfillJob(BaseModel):
    """In-memory record of one gap-repair run."""
    id: str
    status: JobStatus = JobStatus.RUNNING
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    total_gaps: int = 0
    processed_gaps: int = 0
    progress_percent: int = 0
    errors: List[BackfillError] = Field(default_factory=list)
    symbols: List[str] = Field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    forced: bool = False
    error: Optional[str] = Field(None, description="Structural failure that ended the job")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _recompute_progress(self) -> None:
        if self.is_terminal:
            self.progress_percent = 100
        elif self.total_gaps <= 0:
            self.progress_percent = 0
        else:
            # 100 is reserved for terminal jobs
            self.progress_percent = min(99, self.processed_gaps * 100 // self.total_gaps)

    def set_total_gaps(self, total: int) -> None:
        self.total_gaps = max(total, self.processed_gaps)
        self._recompute_progress()

    def record_gap_processed(self, error: Optional[BackfillError] = None) -> None:
        """Advance processed_gaps by one (capped at total_gaps) and record an optional error."""
        if error is not None:
            self.errors.append(error)
        self.processed_gaps = min(self.processed_gaps + 1, self.total_gaps)
        self._recompute_progress()

    def mark_completed(self) -> None:
        self.status = JobStatus.COMPLETED
        self.completed_at = utc_now()
        self._recompute_progress()

    def mark_failed(self, message: str) -> None:
        self.status = JobStatus.FAILED
        self.error = message
        self.completed_at = utc_now()
        self._recompute_progress()

    def snapshot(self) -> "BackfillJob":
        """Detached deep copy safe to hand to callers."""
        return self.model_copy(deep=True)

    def to_response(self) -> Dict[str, Any]:
        """JSON-ready dict in the shape the status endpoints return."""
        return {
            "id": self.id,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "totalGaps": self.total_gaps,
            "processedGaps": self.processed_gaps,
            "progressPercent": self.progress_percent,
            "symbols": list(self.symbols),
            "startTime": self.start_time.isoformat() if self.start_time else None,
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "forced": self.forced,
            "error": self.error,
            "errors": [
                {
                    "symbol": e.symbol,
                    "startTime": e.start_time.isoformat(),
                    "endTime": e.end_time.isoformat(),
                    "message": e.message,
                }
                for e in self.errors
            ],
        }


class CollectionResult(BaseModel):
    """Outcome of one polling cycle."""
    started_at: datetime
    duration_seconds: float
    symbols: int
    succeeded: int
    failed: int
    failed_symbols: List[str] = Field(default_factory=list)
