"""HTTP control surface: subscriptions, cache queries and manual ingest."""

from __future__ import annotations

import asyncio
import logging
import time

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from ..config import Settings
from ..errors import ConfigurationError, InvalidRequestError, LiveFeedError
from .backfill import backfill_price
from .cache import PriceCache
from .models import PriceRecord, canonical_symbol
from .multiplexer import SubscriptionMultiplexer

logger = logging.getLogger(__name__)


class SubscribeBody(BaseModel):
    symbols: list[str]


class IngestOneBody(BaseModel):
    symbol: str
    price: float
    ts_event_ns: int | None = None


class IngestHistBody(BaseModel):
    symbol: str
    timestamp: str


def create_live_router(
    price_cache: PriceCache,
    multiplexer: SubscriptionMultiplexer,
    settings: Settings,
    hist_client: httpx.AsyncClient | None = None,
) -> APIRouter:
    """Create the control surface router around the shared feed components.

    Handlers read the PriceCache directly and reach the upstream feed only
    through the multiplexer's control channel.
    """
    router = APIRouter(tags=["live"])

    @router.get("/", response_class=PlainTextResponse)
    async def health() -> str:
        return "Live Test Server"

    @router.get("/api/live/prices")
    async def get_prices(symbols: str = "") -> dict:
        """Cached prices for a comma-separated symbol list. Unknown symbols are omitted."""
        requested = [canonical_symbol(s) for s in symbols.split(",")]
        requested = [s for s in requested if s]
        if not requested:
            raise InvalidRequestError("Missing symbols query param")

        found = price_cache.get_many(requested)
        logger.info("get_prices: %d requested, %d found", len(requested), len(found))
        return {key: record.to_dict() for key, record in found.items()}

    @router.get("/api/live/all")
    async def get_all_prices() -> dict:
        prices = price_cache.get_all()
        logger.info("get_all_prices: %d entries", len(prices))
        return {key: record.to_dict() for key, record in prices.items()}

    @router.post("/subscribe")
    async def subscribe(body: SubscribeBody) -> dict:
        """Add symbols to the live subscription.

        Waits for the multiplexer to confirm (or roll back) the upstream call,
        then for a short settle delay before counting how many requested
        symbols already have cached prices. That ``valid`` count is only a
        hint: a quiet symbol may be subscribed and simply not have traded yet.
        """
        symbols = sorted({canonical_symbol(s) for s in body.symbols} - {""})
        if not symbols:
            raise InvalidRequestError("Body must be { symbols: string[] } with at least one symbol")
        if not settings.databento_api_key:
            raise ConfigurationError("DATABENTO_API_KEY not set")

        logger.info("Subscribe request for symbols: %s", symbols)
        try:
            added = await asyncio.wait_for(multiplexer.subscribe(symbols), timeout=settings.subscribe_timeout)
        except asyncio.TimeoutError:
            raise LiveFeedError("Upstream timeout", status_code=504) from None

        if not added:
            return {
                "status": "ok",
                "message": "All symbols already subscribed",
                "requested": len(symbols),
                "subscribed": 0,
                "valid": len(price_cache.get_many(symbols)),
            }

        await asyncio.sleep(settings.subscribe_settle_delay)
        return {
            "status": "ok",
            "requested": len(symbols),
            "subscribed": len(added),
            "valid": len(price_cache.get_many(symbols)),
        }

    @router.post("/ingest_one")
    async def ingest_one(body: IngestOneBody) -> dict:
        """Write a price straight into the cache, bypassing the feed."""
        key = canonical_symbol(body.symbol)
        if not key:
            raise InvalidRequestError("symbol must not be empty")
        ts = body.ts_event_ns if body.ts_event_ns is not None else time.time_ns()
        price_cache.put(key, PriceRecord(price=body.price, ts_event_ns=ts))
        logger.info("Ingested test price %s=%s", key, body.price)
        return {"status": "ok"}

    @router.post("/api/live/ingest_hist")
    async def ingest_hist(body: IngestHistBody, request: Request) -> dict:
        """Backfill from the historical API. Uses ``hist_client``, else the
        app's shared client, else a one-off client."""
        symbol = canonical_symbol(body.symbol)
        if not symbol:
            raise InvalidRequestError("symbol must not be empty")
        client = hist_client or getattr(request.app.state, "hist_client", None)
        result = await backfill_price(
            symbol,
            body.timestamp,
            price_cache=price_cache,
            settings=settings,
            client=client,
        )
        return result.to_dict()

    return router
