"""Tests for the Databento live connection (mocked SDK client)."""

from unittest.mock import AsyncMock, MagicMock

import databento as db
import pytest

from livefeed.errors import FeedError
from livefeed.market.databento_client import DatabentoConnection, _translate
from livefeed.market.models import MappingRecord, TradeRecord


def _connection(client=None) -> DatabentoConnection:
    conn = DatabentoConnection(api_key="test-key", dataset="EQUS.MINI")
    conn._client = client if client is not None else MagicMock()
    return conn


async def _records(*items):
    for item in items:
        yield item


class TestTranslate:
    def test_trade(self):
        """Test that trade prices are scaled from 1e-9 fixed point."""
        msg = MagicMock(spec=db.TradeMsg)
        msg.instrument_id = 15
        msg.price = 190_500_000_000
        msg.size = 100
        msg.ts_event = 1_700_000_000_000_000_000

        record = _translate(msg)

        assert record == TradeRecord(
            instrument_id=15, price=190.5, size=100, ts_event_ns=1_700_000_000_000_000_000
        )

    def test_symbol_mapping(self):
        msg = MagicMock(spec=db.SymbolMappingMsg)
        msg.instrument_id = 15
        msg.stype_out_symbol = "AAPL"

        assert _translate(msg) == MappingRecord(instrument_id=15, raw_symbol="AAPL")

    def test_other_records_pass_through(self):
        other = object()
        assert _translate(other) is other


@pytest.mark.asyncio
class TestDatabentoConnection:
    """Session calls against a mocked databento.Live."""

    async def test_subscribe_trades_by_raw_symbol(self):
        client = MagicMock()
        conn = _connection(client)

        await conn.subscribe({"MSFT", "AAPL"})

        client.subscribe.assert_called_once_with(
            dataset="EQUS.MINI",
            schema="trades",
            stype_in="raw_symbol",
            symbols=["AAPL", "MSFT"],
        )

    async def test_subscribe_error_wrapped(self):
        """Test that SDK errors surface as FeedError."""
        client = MagicMock()
        client.subscribe.side_effect = db.BentoError("gateway rejected")

        with pytest.raises(FeedError, match="gateway rejected"):
            await _connection(client).subscribe({"AAPL"})

    async def test_start_error_wrapped(self):
        client = MagicMock()
        client.start.side_effect = OSError("socket closed")

        with pytest.raises(FeedError):
            await _connection(client).start()

    async def test_next_record_translates(self):
        msg = MagicMock(spec=db.TradeMsg)
        msg.instrument_id = 3
        msg.price = 2_000_000_000
        msg.size = 1
        msg.ts_event = 5
        conn = _connection()
        conn._iterator = _records(msg)

        record = await conn.next_record()

        assert record == TradeRecord(instrument_id=3, price=2.0, size=1, ts_event_ns=5)

    async def test_clean_end_returns_none(self):
        """Exhausted iteration with a clean close is end of stream."""
        client = MagicMock()
        client.wait_for_close = AsyncMock(return_value=None)
        conn = _connection(client)
        conn._iterator = _records()

        assert await conn.next_record() is None

    async def test_failed_session_raises(self):
        """Exhausted iteration with a failed close is a read error."""
        client = MagicMock()
        client.wait_for_close = AsyncMock(side_effect=db.BentoError("connection lost"))
        conn = _connection(client)
        conn._iterator = _records()

        with pytest.raises(FeedError, match="connection lost"):
            await conn.next_record()

    async def test_close_terminates_once(self):
        client = MagicMock()
        conn = _connection(client)

        await conn.close()
        await conn.close()

        client.terminate.assert_called_once()

    async def test_close_before_connect(self):
        """Test that close() on an unconnected session is a no-op."""
        await DatabentoConnection(api_key="k", dataset="EQUS.MINI").close()
