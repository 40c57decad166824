"""Historical backfill: VWAP over a short trade window from the Databento REST API."""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx
import numpy as np

from ..config import Settings
from ..errors import ConfigurationError, InvalidRequestError, NoTradesError, UpstreamQueryError
from .cache import PriceCache
from .databento_client import PRICE_SCALE
from .models import PriceRecord

logger = logging.getLogger(__name__)

WINDOW_BEFORE = timedelta(seconds=1)
WINDOW_LENGTH = timedelta(seconds=2)
QUERY_LIMIT = 100

_RFC3339 = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)


@dataclass(frozen=True, slots=True)
class BackfillResult:
    symbol: str
    price: float
    trades: int

    def to_dict(self) -> dict:
        return {"status": "ok", "symbol": self.symbol, "price": self.price, "trades": self.trades}


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC3339 timestamp into an aware UTC datetime.

    Accepts ``T``, ``t`` or a space as separator and ``Z``, ``z`` or a
    ``+HH:MM`` offset. Other ISO 8601 forms (basic format, week dates,
    offsets without a colon) are rejected.
    """
    match = _RFC3339.match(value.strip())
    if match is None:
        raise InvalidRequestError(f"invalid timestamp: {value!r} is not RFC3339")
    date, clock, fraction, offset = match.groups()
    # Sub-microsecond digits are dropped.
    micros = f".{fraction[:6].ljust(6, '0')}" if fraction else ""
    offset = "+00:00" if offset in ("Z", "z") else offset
    try:
        parsed = datetime.fromisoformat(f"{date}T{clock}{micros}{offset}")
    except ValueError as e:
        raise InvalidRequestError(f"invalid timestamp: {e}") from e
    return parsed.astimezone(timezone.utc)


def query_window(ts: datetime) -> tuple[str, str]:
    """Start/end strings for a window from 1s before ``ts`` to 1s after.

    Seconds precision, UTC ``Z`` suffix. Sub-second digits are truncated.
    """
    start = ts.astimezone(timezone.utc) - WINDOW_BEFORE
    end = start + WINDOW_LENGTH
    fmt = "%Y-%m-%dT%H:%M:%SZ"
    return start.strftime(fmt), end.strftime(fmt)


def parse_trades(body: str) -> list[tuple[float, float]]:
    """Extract (price_dollars, size) pairs from a newline-delimited JSON body.

    Prices arrive as fixed-point integers (as JSON numbers or numeric strings).
    Blank lines, unparseable lines and lines without a price are skipped; a
    missing or non-numeric size counts as zero.
    """
    trades: list[tuple[float, float]] = []
    for line in body.splitlines():
        if not line.strip():
            continue
        try:
            row = json.loads(line)
            raw_price = row.get("price")
            if raw_price is None:
                continue
            price = float(raw_price) / PRICE_SCALE
        except (ValueError, TypeError, AttributeError):
            logger.debug("Skipping unparseable trade line: %.200s", line)
            continue
        trades.append((price, _size(row.get("size"))))
    return trades


def _size(raw) -> float:
    try:
        return float(raw or 0)
    except (ValueError, TypeError):
        return 0.0


def compute_vwap(trades: Iterable[tuple[float, float]]) -> float:
    """Volume-weighted average price: sum(price * size) / sum(size).

    Trades with zero size do not weigh in. If no trade has size, returns the
    midpoint of the lowest and highest finite price.
    """
    data = np.asarray(list(trades), dtype=float).reshape(-1, 2)
    data = data[np.isfinite(data[:, 0])]
    if len(data) == 0:
        raise ValueError("no priced trades")

    prices, sizes = data[:, 0], data[:, 1]
    traded = sizes > 0
    total_size = sizes[traded].sum()
    if total_size > 0:
        return float(np.dot(prices[traded], sizes[traded]) / total_size)
    return float((prices.min() + prices.max()) / 2)


async def backfill_price(
    symbol: str,
    timestamp: datetime | str,
    price_cache: PriceCache,
    settings: Settings,
    client: httpx.AsyncClient | None = None,
) -> BackfillResult:
    """Query the trade window around ``timestamp`` and write its VWAP under ``symbol``.

    ``symbol`` must already be canonical; ``timestamp`` is an aware datetime or
    an RFC3339 string. Exactly one cache write on success, none on any
    failure.

    Raises:
        ConfigurationError: no API key configured (400)
        InvalidRequestError: unparseable timestamp (400)
        UpstreamQueryError: transport failure or non-success status (502)
        NoTradesError: the window holds no trades (404)
    """
    if not settings.databento_api_key:
        raise ConfigurationError("DATABENTO_API_KEY not configured", status_code=400)

    ts = parse_timestamp(timestamp) if isinstance(timestamp, str) else timestamp
    start, end = query_window(ts)
    logger.info("Historical query window for %s: %s .. %s", symbol, start, end)
    params = {
        "dataset": settings.dataset,
        "symbols": symbol,
        "stype_in": "raw_symbol",
        "start": start,
        "end": end,
        "schema": "trades",
        "encoding": "json",
        "limit": str(QUERY_LIMIT),
    }

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=30.0)
    try:
        resp = await client.get(
            f"{settings.hist_url}/v0/timeseries.get_range",
            params=params,
            auth=(settings.databento_api_key, ""),
            headers={"Accept": "application/json"},
        )
    except httpx.HTTPError as e:
        logger.error("Historical request failed: %s", e)
        raise UpstreamQueryError("upstream request failed") from e
    finally:
        if own_client:
            await client.aclose()

    if not resp.is_success:
        logger.warning("Historical API returned %d: %.500s", resp.status_code, resp.text)
        raise UpstreamQueryError(f"upstream error (status {resp.status_code})")

    trades = parse_trades(resp.text)
    try:
        vwap = compute_vwap(trades)
    except ValueError:
        raise NoTradesError("no trades in window") from None

    price_cache.put(symbol, PriceRecord(price=vwap, ts_event_ns=time.time_ns()))
    logger.info("Backfilled %s at %.4f from %d trades", symbol, vwap, len(trades))
    return BackfillResult(symbol=symbol, price=vwap, trades=len(trades))
