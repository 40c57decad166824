"""Tests for the historical VWAP backfill (mocked REST API)."""

import base64
import json
from dataclasses import replace
from datetime import datetime, timezone

import httpx
import pytest

from livefeed.errors import ConfigurationError, InvalidRequestError, NoTradesError, UpstreamQueryError
from livefeed.market.backfill import (
    backfill_price,
    compute_vwap,
    parse_timestamp,
    parse_trades,
    query_window,
)
from livefeed.market.cache import PriceCache


def _ndjson(*rows: dict) -> str:
    return "\n".join(json.dumps(row) for row in rows) + "\n"


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestParseTimestamp:
    def test_utc_suffix(self):
        """Test that a Z suffix parses as UTC."""
        ts = parse_timestamp("2024-01-02T14:30:05Z")
        assert ts == datetime(2024, 1, 2, 14, 30, 5, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self):
        ts = parse_timestamp("2024-01-02T09:30:05-05:00")
        assert ts == datetime(2024, 1, 2, 14, 30, 5, tzinfo=timezone.utc)

    def test_rejects_garbage(self):
        with pytest.raises(InvalidRequestError):
            parse_timestamp("yesterday")

    def test_rejects_naive(self):
        """A timestamp without offset is ambiguous and rejected."""
        with pytest.raises(InvalidRequestError):
            parse_timestamp("2024-01-02T14:30:05")

    @pytest.mark.parametrize(
        "value",
        [
            "2024-01-02t14:30:05z",
            "2024-01-02T14:30:05z",
            "2024-01-02 14:30:05+00:00",
            "2024-01-02T16:30:05+02:00",
        ],
    )
    def test_accepts_rfc3339_variants(self, value):
        """Lower-case separators, space separator and colon offsets all parse."""
        assert parse_timestamp(value) == datetime(2024, 1, 2, 14, 30, 5, tzinfo=timezone.utc)

    def test_fraction_truncated_to_microseconds(self):
        ts = parse_timestamp("2024-01-02T14:30:05.123456789Z")
        assert ts.microsecond == 123456

    def test_short_fraction(self):
        assert parse_timestamp("2024-01-02T14:30:05.5Z").microsecond == 500000

    @pytest.mark.parametrize(
        "value",
        [
            "20240102T143005Z",
            "2024-01-02 14:30:05+0000",
            "2024-W01-2T14:30:05Z",
            "2024-01-02",
            "2024-13-02T14:30:05Z",
        ],
    )
    def test_rejects_other_iso_forms(self, value):
        """ISO 8601 forms outside RFC3339 are rejected."""
        with pytest.raises(InvalidRequestError):
            parse_timestamp(value)


class TestQueryWindow:
    def test_one_second_either_side(self):
        ts = datetime(2024, 1, 2, 14, 30, 5, tzinfo=timezone.utc)
        assert query_window(ts) == ("2024-01-02T14:30:04Z", "2024-01-02T14:30:06Z")

    def test_subsecond_truncated(self):
        """Test that fractional seconds are dropped from both bounds."""
        ts = datetime(2024, 1, 2, 14, 30, 5, 750_000, tzinfo=timezone.utc)
        assert query_window(ts) == ("2024-01-02T14:30:04Z", "2024-01-02T14:30:06Z")

    def test_crosses_midnight(self):
        ts = datetime(2024, 1, 2, 0, 0, 0, tzinfo=timezone.utc)
        assert query_window(ts) == ("2024-01-01T23:59:59Z", "2024-01-02T00:00:01Z")


class TestParseTrades:
    def test_fixed_point_prices(self):
        """Prices are scaled from 1e-9 fixed point, as numbers or strings."""
        body = _ndjson({"price": 190_500_000_000, "size": 10}, {"price": "191000000000", "size": 5})
        assert parse_trades(body) == [(190.5, 10.0), (191.0, 5.0)]

    def test_skips_blank_and_bad_lines(self):
        body = '\n{"price": 1000000000, "size": 1}\nnot json\n{"size": 3}\n[1, 2]\n'
        assert parse_trades(body) == [(1.0, 1.0)]

    def test_missing_size_is_zero(self):
        assert parse_trades(_ndjson({"price": 2_000_000_000})) == [(2.0, 0.0)]

    def test_non_numeric_size_is_zero(self):
        """A bad size keeps the trade, so it still counts toward the midpoint."""
        body = _ndjson({"price": 2_000_000_000, "size": "lots"}, {"price": 4_000_000_000, "size": [1]})
        trades = parse_trades(body)
        assert trades == [(2.0, 0.0), (4.0, 0.0)]
        assert compute_vwap(trades) == pytest.approx(3.0)

    def test_empty_body(self):
        assert parse_trades("") == []


class TestComputeVwap:
    def test_weighted_by_size(self):
        """Test sum(price * size) / sum(size)."""
        assert compute_vwap([(100.0, 1), (102.0, 3)]) == pytest.approx(101.5)

    def test_zero_size_trades_ignored(self):
        assert compute_vwap([(100.0, 2), (500.0, 0)]) == pytest.approx(100.0)

    def test_midpoint_when_no_size(self):
        """Without any traded size, the price is the midpoint of the range."""
        assert compute_vwap([(100.0, 0), (104.0, 0), (101.0, 0)]) == pytest.approx(102.0)

    def test_non_finite_prices_skipped(self):
        assert compute_vwap([(float("nan"), 5), (50.0, 1)]) == pytest.approx(50.0)

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            compute_vwap([])


@pytest.mark.asyncio
class TestBackfillPrice:
    """End to end against a mocked historical endpoint."""

    async def test_writes_vwap_to_cache(self, settings):
        """Test that the VWAP of the window lands in the cache under the symbol."""
        body = _ndjson(
            {"price": 100_000_000_000, "size": 1},
            {"price": 102_000_000_000, "size": 3},
        )
        cache = PriceCache()
        async with _client(lambda request: httpx.Response(200, text=body)) as client:
            result = await backfill_price("AAPL", "2024-01-02T14:30:05Z", cache, settings, client=client)

        assert result.price == pytest.approx(101.5)
        assert result.trades == 2
        assert result.to_dict() == {"status": "ok", "symbol": "AAPL", "price": result.price, "trades": 2}
        assert cache.get("AAPL").price == pytest.approx(101.5)
        assert cache.get("AAPL").ts_event_ns > 0

    async def test_query_shape(self, settings):
        """The request carries the window, dataset, limit and basic auth."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text=_ndjson({"price": 1_000_000_000, "size": 1}))

        async with _client(handler) as client:
            await backfill_price("MSFT", "2024-01-02T14:30:05.250Z", PriceCache(), settings, client=client)

        request = seen[0]
        assert request.method == "GET"
        assert request.url.host == "hist.example.test"
        assert request.url.path == "/v0/timeseries.get_range"
        params = request.url.params
        assert params["dataset"] == settings.dataset
        assert params["symbols"] == "MSFT"
        assert params["stype_in"] == "raw_symbol"
        assert params["schema"] == "trades"
        assert params["encoding"] == "json"
        assert params["limit"] == "100"
        assert params["start"] == "2024-01-02T14:30:04Z"
        assert params["end"] == "2024-01-02T14:30:06Z"
        expected = base64.b64encode(b"test-key:").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"

    async def test_accepts_datetime(self, settings):
        cache = PriceCache()
        ts = datetime(2024, 1, 2, 14, 30, 5, tzinfo=timezone.utc)
        async with _client(lambda r: httpx.Response(200, text=_ndjson({"price": 5_000_000_000, "size": 2}))) as client:
            result = await backfill_price("SPY", ts, cache, settings, client=client)
        assert result.price == pytest.approx(5.0)

    async def test_empty_window(self, settings):
        """No trades in the window: NoTradesError and no cache write."""
        cache = PriceCache()
        async with _client(lambda r: httpx.Response(200, text="")) as client:
            with pytest.raises(NoTradesError) as exc_info:
                await backfill_price("AAPL", "2024-01-02T14:30:05Z", cache, settings, client=client)
        assert exc_info.value.status_code == 404
        assert "AAPL" not in cache

    async def test_upstream_error_status(self, settings):
        cache = PriceCache()
        async with _client(lambda r: httpx.Response(401, text='{"detail": "bad key"}')) as client:
            with pytest.raises(UpstreamQueryError) as exc_info:
                await backfill_price("AAPL", "2024-01-02T14:30:05Z", cache, settings, client=client)
        assert exc_info.value.status_code == 502
        assert "401" in str(exc_info.value)
        assert len(cache) == 0

    async def test_transport_failure(self, settings):
        """Test that a connection error surfaces as an upstream failure."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        cache = PriceCache()
        async with _client(handler) as client:
            with pytest.raises(UpstreamQueryError):
                await backfill_price("AAPL", "2024-01-02T14:30:05Z", cache, settings, client=client)
        assert len(cache) == 0

    async def test_missing_key(self, settings):
        """No credential: rejected before any request goes out."""
        calls = []
        no_key = replace(settings, databento_api_key=None)
        async with _client(lambda r: calls.append(r) or httpx.Response(200)) as client:
            with pytest.raises(ConfigurationError) as exc_info:
                await backfill_price("AAPL", "2024-01-02T14:30:05Z", PriceCache(), no_key, client=client)
        assert exc_info.value.status_code == 400
        assert calls == []

    async def test_bad_timestamp(self, settings):
        calls = []
        async with _client(lambda r: calls.append(r) or httpx.Response(200)) as client:
            with pytest.raises(InvalidRequestError):
                await backfill_price("AAPL", "not-a-time", PriceCache(), settings, client=client)
        assert calls == []
