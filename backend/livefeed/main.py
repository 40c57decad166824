"""Process entry point: FastAPI app wiring the feed, the relay and the HTTP surface."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings
from .errors import LiveFeedError
from .market import (
    BroadcastRelay,
    PriceCache,
    SubscriptionMultiplexer,
    SymbolTable,
    create_feed_connector,
    create_live_router,
)

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def live_feed_error_handler(request: Request, exc: LiveFeedError) -> JSONResponse:
    """Render any LiveFeedError as ``{"error": message}`` with its status."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application. Background tasks start with the lifespan."""
    settings = settings or Settings.from_env()

    price_cache = PriceCache()
    symbol_table = SymbolTable()
    updates: asyncio.Queue = asyncio.Queue()
    multiplexer = SubscriptionMultiplexer(
        connect=create_feed_connector(settings),
        price_cache=price_cache,
        symbol_table=symbol_table,
        updates=updates,
        reconnect_delay=settings.feed_reconnect_delay,
    )
    relay = BroadcastRelay(
        updates=updates,
        url=settings.relay_url,
        reconnect_delay=settings.relay_reconnect_delay,
        connect_retry_delay=settings.relay_connect_retry_delay,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.hist_client = httpx.AsyncClient(timeout=30.0)
        await multiplexer.start()
        await relay.start()
        logger.info("Live feed server ready on %s:%d", settings.host, settings.port)
        try:
            yield
        finally:
            await relay.stop()
            await multiplexer.stop()
            await app.state.hist_client.aclose()

    app = FastAPI(title="Live Feed", lifespan=lifespan)
    app.state.settings = settings
    app.state.price_cache = price_cache
    app.state.symbol_table = symbol_table
    app.state.multiplexer = multiplexer
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        max_age=24 * 60 * 60,
    )

    app.add_exception_handler(LiveFeedError, live_feed_error_handler)
    app.include_router(create_live_router(price_cache, multiplexer, settings))
    return app


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger.info("Starting live server on %s:%d (dataset %s)", settings.host, settings.port, settings.dataset)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
