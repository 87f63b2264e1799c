"""
Polygon WebSocket collector for trades and per-second aggregates.

Maintains one persistent connection, authenticates, subscribes the
tracked symbols to the trade (T) and aggregate (A) channels, and writes
each event to storage tagged as streaming. Any error or disconnect drops
back to `disconnected` and reconnects after a fixed delay, forever.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed

from .config import config
from .market_store import MarketDataStore
from .models import (
    AggregateBar,
    BarEvent,
    PricePoint,
    SourceTag,
    StatusEvent,
    StreamEvent,
    StreamState,
    TradeEvent,
    UnknownEvent,
    parse_stream_event,
)

logger = logging.getLogger("tickflow.stream_collector")


class StreamAuthError(Exception):
    """The provider rejected the stream credentials."""


class StreamCollector:
    """
    Streaming ingestion for the tracked symbol set.

    Features:
    - Fixed-delay reconnection with unbounded retries
    - Typed dispatch of trade, bar and status events
    - Unknown symbols dropped (instruments are never created from the stream)
    - Malformed payloads logged and skipped without closing the connection
    """

    def __init__(
        self,
        store: MarketDataStore,
        symbols: Optional[List[str]] = None,
        api_key: Optional[str] = None,
        ws_url: Optional[str] = None,
        reconnect_delay: Optional[float] = None,
        on_state_change: Optional[Callable[[StreamState, StreamState], Any]] = None,
    ):
        """
        Initialize the collector.

        Args:
            store: Market data store used for instrument lookups and writes
            symbols: Symbols to subscribe (defaults to config.TICKERS)
            api_key: Polygon API key (defaults to config.POLYGON_API_KEY)
            ws_url: Stream endpoint (defaults to config.POLYGON_WS_URL)
            reconnect_delay: Fixed seconds to wait before reconnecting
            on_state_change: Called with (old_state, new_state) on every transition
        """
        self.store = store
        self.symbols = [s.upper() for s in (symbols or config.TICKERS)]
        self.api_key = api_key or config.POLYGON_API_KEY
        self.ws_url = ws_url or config.POLYGON_WS_URL
        self.reconnect_delay = reconnect_delay if reconnect_delay is not None else config.STREAM_RECONNECT_DELAY
        self.on_state_change = on_state_change

        self._state = StreamState.DISCONNECTED
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._websocket = None

        # Memoized symbol -> instrument id (positive hits only)
        self._instrument_ids: Dict[str, int] = {}
        self._warned_symbols: set = set()

        self._handlers = {
            TradeEvent: self._handle_trade,
            BarEvent: self._handle_bar,
            StatusEvent: self._handle_status,
            UnknownEvent: self._handle_unknown,
        }

        # Statistics
        self._reconnect_count = 0
        self._messages_received = 0
        self._trades_written = 0
        self._bars_written = 0
        self._dropped_unknown_symbol = 0
        self._malformed = 0
        self._write_errors = 0
        self._last_message_time: Optional[float] = None
        self._connected_since: Optional[float] = None

    @property
    def state(self) -> StreamState:
        return self._state

    def _set_state(self, new_state: StreamState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.info(f"Stream state {old_state.value} -> {new_state.value}")
        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

    async def start(self) -> None:
        """Start the connection loop in the background."""
        if self._running:
            logger.warning("StreamCollector is already running")
            return
        if not self.api_key:
            logger.warning("POLYGON_API_KEY not set, stream authentication will fail")

        logger.info(f"Starting StreamCollector for {len(self.symbols)} symbols")
        self._running = True
        self._task = asyncio.create_task(self._connection_loop())

    async def stop(self) -> None:
        """Stop the collector and close the connection."""
        logger.info("Stopping StreamCollector...")
        self._running = False

        if self._websocket is not None:
            try:
                await self._websocket.close()
            except Exception as e:
                logger.debug(f"Error closing websocket: {e}")
            self._websocket = None

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self._set_state(StreamState.DISCONNECTED)
        logger.info(
            f"StreamCollector stopped. Final stats: "
            f"messages={self._messages_received}, trades={self._trades_written}, "
            f"bars={self._bars_written}, reconnects={self._reconnect_count}"
        )

    async def _connection_loop(self) -> None:
        """Main connection loop with fixed-delay reconnection."""
        while self._running:
            try:
                await self._connect_and_stream()
            except asyncio.CancelledError:
                raise
            except StreamAuthError as e:
                logger.error(f"Stream authentication failed: {e}")
            except Exception as e:
                logger.error(f"Stream connection error: {e}")

            self._websocket = None
            self._connected_since = None
            self._set_state(StreamState.DISCONNECTED)

            if self._running:
                self._reconnect_count += 1
                logger.info(f"Reconnecting in {self.reconnect_delay}s (attempt {self._reconnect_count})")
                await asyncio.sleep(self.reconnect_delay)

    async def _connect_and_stream(self) -> None:
        """Connect, authenticate, and process messages until the socket closes."""
        self._set_state(StreamState.CONNECTING)
        logger.info(f"Connecting to Polygon stream: {self.ws_url}")

        async with websockets.connect(
            self.ws_url,
            ping_interval=20,
            ping_timeout=10,
            max_size=2 ** 20,
            compression=None
        ) as websocket:
            self._websocket = websocket
            self._connected_since = time.time()

            self._set_state(StreamState.AUTHENTICATING)
            await websocket.send(json.dumps({"action": "auth", "params": self.api_key}))

            try:
                async for message in websocket:
                    if not self._running:
                        break
                    await self._process_message(message)
            except ConnectionClosed as e:
                logger.warning(f"Polygon stream closed: {e}")

    async def _subscribe(self) -> None:
        """Send one subscription per channel covering every tracked symbol."""
        for channel in ("T", "A"):
            params = ",".join(f"{channel}.{symbol}" for symbol in self.symbols)
            await self._websocket.send(json.dumps({"action": "subscribe", "params": params}))
        logger.info(f"Subscribed to trades and aggregates for {len(self.symbols)} symbols")
        self._set_state(StreamState.SUBSCRIBED)

    async def _process_message(self, raw_message: Any) -> None:
        """
        Decode one frame (Polygon sends JSON arrays of events) and dispatch
        each event.

        StreamAuthError propagates so the connection loop can reconnect;
        everything else is logged and skipped.
        """
        self._messages_received += 1
        self._last_message_time = time.time()

        try:
            payload = json.loads(raw_message)
        except (json.JSONDecodeError, TypeError) as e:
            self._malformed += 1
            logger.error(f"Failed to parse message as JSON: {e}")
            return

        events = payload if isinstance(payload, list) else [payload]
        for item in events:
            try:
                event = parse_stream_event(item)
            except (ValidationError, TypeError) as e:
                self._malformed += 1
                logger.warning(f"Skipping malformed stream event: {e}")
                continue
            await self.dispatch(event)

    async def dispatch(self, event: StreamEvent) -> None:
        """Route a typed event to its handler."""
        handler = self._handlers[type(event)]
        await handler(event)

    async def _resolve_instrument_id(self, symbol: str) -> Optional[int]:
        instrument_id = self._instrument_ids.get(symbol)
        if instrument_id is not None:
            return instrument_id

        instrument_id = await self.store.get_instrument_id(symbol)
        if instrument_id is None:
            self._dropped_unknown_symbol += 1
            if symbol not in self._warned_symbols:
                self._warned_symbols.add(symbol)
                logger.warning(f"Dropping stream events for unknown symbol {symbol}")
            return None

        self._instrument_ids[symbol] = instrument_id
        self._warned_symbols.discard(symbol)
        return instrument_id

    def _mark_streaming(self) -> None:
        if self._state == StreamState.SUBSCRIBED:
            self._set_state(StreamState.STREAMING)

    async def _handle_trade(self, event: TradeEvent) -> None:
        self._mark_streaming()
        try:
            instrument_id = await self._resolve_instrument_id(event.symbol)
            if instrument_id is None:
                return
            await self.store.upsert_price_point(PricePoint(
                instrument_id=instrument_id,
                price=event.price,
                volume=event.size,
                timestamp=event.timestamp,
                source=SourceTag.STREAMING,
            ))
            self._trades_written += 1
        except Exception as e:
            self._write_errors += 1
            logger.error(f"Failed to store trade for {event.symbol}: {e}")

    async def _handle_bar(self, event: BarEvent) -> None:
        self._mark_streaming()
        try:
            instrument_id = await self._resolve_instrument_id(event.symbol)
            if instrument_id is None:
                return
            await self.store.upsert_aggregate_bar(AggregateBar(
                instrument_id=instrument_id,
                open=event.open,
                high=event.high,
                low=event.low,
                close=event.close,
                volume=event.volume,
                vwap=event.vwap,
                timestamp=event.timestamp,
                source=SourceTag.STREAMING,
            ))
            self._bars_written += 1
        except Exception as e:
            self._write_errors += 1
            logger.error(f"Failed to store aggregate for {event.symbol}: {e}")

    async def _handle_status(self, event: StatusEvent) -> None:
        if event.status == "auth_success":
            logger.info("Polygon stream authenticated")
            await self._subscribe()
        elif event.status == "auth_failed":
            raise StreamAuthError(event.message or "auth_failed")
        elif event.status == "success":
            logger.info(f"Polygon stream: {event.message}")
            self._mark_streaming()
        else:
            logger.debug(f"Polygon status {event.status}: {event.message}")

    async def _handle_unknown(self, event: UnknownEvent) -> None:
        if self._messages_received % 100 == 0:
            logger.debug(f"Unhandled stream event type: {event.ev}")

    def is_healthy(self) -> bool:
        """Healthy only while events are flowing on an authenticated subscription."""
        return self._running and self._state == StreamState.STREAMING

    def get_stats(self) -> Dict[str, Any]:
        """Get collector statistics."""
        return {
            "running": self._running,
            "state": self._state.value,
            "symbols": len(self.symbols),
            "reconnects": self._reconnect_count,
            "messages_received": self._messages_received,
            "trades_written": self._trades_written,
            "bars_written": self._bars_written,
            "dropped_unknown_symbol": self._dropped_unknown_symbol,
            "malformed": self._malformed,
            "write_errors": self._write_errors,
            "last_message_time": self._last_message_time,
            "uptime_seconds": time.time() - self._connected_since if self._connected_since else 0,
        }
