"""
Unit tests for the polling collector.
"""

import asyncio
import json
import time
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from tickflow.models import InstrumentSnapshot, RatioSnapshot
from tickflow.poll_collector import PollCollector, chunk
from tickflow.stream_collector import StreamCollector
from conftest import FakeDatabase, FakePolygonClient


class GatedClient(FakePolygonClient):
    """Each snapshot call blocks until its gate is released."""

    def __init__(self):
        super().__init__()
        self.gates = []

    async def get_reliable_stock_data(self, symbol):
        gate = asyncio.Event()
        self.gates.append(gate)
        await gate.wait()
        return await super().get_reliable_stock_data(symbol)


def make_collector(db, store, client, symbols=("AAPL", "MSFT"), **kwargs):
    defaults = dict(interval=60, batch_size=5, batch_pause=0, collection_timeout=10, enrichment_enabled=False)
    defaults.update(kwargs)
    return PollCollector(db, store, client, symbols=list(symbols), **defaults)


async def wait_for_gates(client, count):
    while len(client.gates) < count:
        await asyncio.sleep(0)


def test_chunk():
    assert chunk(["A", "B", "C", "D", "E"], 2) == [["A", "B"], ["C", "D"], ["E"]]
    assert chunk([], 3) == []


class TestCollect:
    """One collection cycle."""

    @pytest.mark.asyncio
    async def test_failing_symbol_does_not_affect_batch(self, fake_db, fake_store):
        symbols = [f"SYM{i:02d}" for i in range(20)]
        client = FakePolygonClient(failing_symbols=["SYM07"])
        collector = make_collector(fake_db, fake_store, client, symbols=symbols)

        with patch("tickflow.poll_collector.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await collector.collect()

        assert result.succeeded == 19
        assert result.failed == 1
        assert result.failed_symbols == ["SYM07"]
        assert len(fake_store.instruments) == 19
        assert "SYM07" not in fake_store.instruments
        assert len(fake_store.rows("price_points")) == 19
        assert len(fake_store.rows("aggregate_bars")) == 19
        # Pause between batches only, not after the last one
        assert mock_sleep.await_count == 3

    @pytest.mark.asyncio
    async def test_rows_are_tagged_polling_with_second_precision(self, fake_db, fake_store, fake_client):
        collector = make_collector(fake_db, fake_store, fake_client, symbols=["AAPL"])

        await collector.collect()

        instrument_id = fake_store.instruments["AAPL"]["id"]
        assert fake_store.instruments["AAPL"]["name"] == "AAPL Inc."
        [point] = fake_store.rows("price_points", instrument_id)
        assert point["source"] == "polling"
        assert point["price"] == 101.0
        assert point["timestamp"].microsecond == 0
        assert point["timestamp"].tzinfo == timezone.utc
        [agg] = fake_store.rows("aggregate_bars", instrument_id)
        assert agg["source"] == "polling"
        assert agg["timestamp"] == point["timestamp"]
        assert fake_db.transactions == 1

    def test_snapshot_bar_falls_back_to_price(self):
        snapshot = InstrumentSnapshot(symbol="AAPL", last_price=50.0, volume=None)
        ts = datetime(2024, 1, 2, tzinfo=timezone.utc)

        bar = PollCollector._snapshot_bar(1, snapshot, ts)

        assert (bar.open, bar.high, bar.low, bar.close, bar.vwap) == (50.0, 50.0, 50.0, 50.0, 50.0)
        assert bar.volume == 0

    @pytest.mark.asyncio
    async def test_aborts_when_storage_not_initialized(self, fake_store, fake_client):
        collector = make_collector(FakeDatabase(initialized=False), fake_store, fake_client)

        assert await collector.collect() is None

        assert fake_client.snapshot_calls == []
        assert not collector.is_collecting


class TestReentrancy:
    """The collecting flag and its stuck-run ceiling."""

    @pytest.mark.asyncio
    async def test_skips_while_previous_run_active(self, fake_db, fake_store, fake_client):
        collector = make_collector(fake_db, fake_store, fake_client)
        collector._collecting = True
        collector._collection_started = time.monotonic()

        assert await collector.collect() is None

        assert fake_client.snapshot_calls == []
        assert collector.get_stats()["skipped_runs"] == 1

    @pytest.mark.asyncio
    async def test_stuck_flag_is_force_cleared(self, fake_db, fake_store, fake_client):
        collector = make_collector(fake_db, fake_store, fake_client, collection_timeout=10)
        collector._collecting = True
        collector._collection_started = time.monotonic() - 60

        result = await collector.collect()

        assert result.succeeded == 2
        assert collector.get_stats()["forced_clears"] == 1
        assert not collector.is_collecting

    @pytest.mark.asyncio
    async def test_stale_run_does_not_release_successor_flag(self, fake_db, fake_store):
        client = GatedClient()
        collector = make_collector(fake_db, fake_store, client, symbols=["AAPL"], collection_timeout=10)

        first = asyncio.create_task(collector.collect())
        await wait_for_gates(client, 1)

        # Pretend the first run has been stuck past the ceiling
        collector._collection_started = time.monotonic() - 60
        second = asyncio.create_task(collector.collect())
        await wait_for_gates(client, 2)

        client.gates[0].set()
        await first
        assert collector.is_collecting

        client.gates[1].set()
        await second
        assert not collector.is_collecting


class TestEnrichment:
    """Enrichment writes are independent of each other and of the snapshot."""

    @pytest.mark.asyncio
    async def test_enrichment_failures_are_isolated(self, fake_db, fake_store):
        client = FakePolygonClient()
        client.get_company_financials = AsyncMock(side_effect=RuntimeError("financials down"))
        client.get_stock_ratios = AsyncMock(return_value=RatioSnapshot(
            calculation_date=datetime(2024, 1, 2, tzinfo=timezone.utc), pe_ratio=30.0
        ))
        client.get_technical_indicators = AsyncMock(return_value=None)
        collector = make_collector(fake_db, fake_store, client, symbols=["AAPL"], enrichment_enabled=True)

        result = await collector.collect()

        assert result.succeeded == 1
        assert fake_store.enrichment["fundamentals"] == []
        assert len(fake_store.enrichment["ratios"]) == 1
        assert fake_store.enrichment["technicals"] == []
        assert collector.get_stats()["enrichment_writes"] == 1

    @pytest.mark.asyncio
    async def test_enrichment_disabled(self, fake_db, fake_store):
        client = FakePolygonClient()
        client.get_company_financials = AsyncMock()
        collector = make_collector(fake_db, fake_store, client, symbols=["AAPL"], enrichment_enabled=False)

        await collector.collect()

        client.get_company_financials.assert_not_called()


class TestLifecycle:
    """Background loop start/stop."""

    @pytest.mark.asyncio
    async def test_first_collection_runs_immediately(self, fake_db, fake_store, fake_client):
        collector = make_collector(fake_db, fake_store, fake_client, interval=3600)

        await collector.start()
        for _ in range(100):
            if collector.get_stats()["runs"]:
                break
            await asyncio.sleep(0.01)
        await collector.stop()

        assert collector.get_stats()["runs"] == 1
        assert not collector.is_healthy()


class TestSourcePrecedence:
    """Streaming and polling writes landing on the same second."""

    T10 = datetime(2024, 1, 2, 15, 0, 10, tzinfo=timezone.utc)

    def _stream(self, fake_store):
        return StreamCollector(
            fake_store, symbols=["AAPL"], api_key="stream-key", ws_url="wss://stream.test/stocks"
        )

    def _trade_frame(self, price):
        return json.dumps([{
            "ev": "T", "sym": "AAPL", "p": price, "s": 10,
            "t": int(self.T10.timestamp() * 1000),
        }])

    @pytest.mark.asyncio
    async def test_polling_overwrites_streaming(self, fake_db, fake_store, fake_client):
        instrument_id = fake_store.add_instrument("AAPL")
        poller = make_collector(fake_db, fake_store, fake_client, symbols=["AAPL"])

        await self._stream(fake_store)._process_message(self._trade_frame(100.0))
        with patch("tickflow.poll_collector.utc_now", return_value=self.T10):
            await poller.process_symbol("AAPL")

        [point] = fake_store.rows("price_points", instrument_id)
        assert point["timestamp"] == self.T10
        assert point["price"] == 101.0
        assert point["source"] == "polling"

    @pytest.mark.asyncio
    async def test_streaming_does_not_overwrite_polling(self, fake_db, fake_store, fake_client):
        poller = make_collector(fake_db, fake_store, fake_client, symbols=["AAPL"])

        with patch("tickflow.poll_collector.utc_now", return_value=self.T10):
            instrument_id = await poller.process_symbol("AAPL")
        await self._stream(fake_store)._process_message(self._trade_frame(100.0))

        [point] = fake_store.rows("price_points", instrument_id)
        assert point["price"] == 101.0
        assert point["source"] == "polling"
