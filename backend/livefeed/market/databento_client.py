"""Databento live gateway client."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection
from typing import Any

from ..errors import FeedError
from .interface import FeedConnection
from .models import MappingRecord, TradeRecord

logger = logging.getLogger(__name__)

# Databento prices are fixed-point integers in units of 1e-9 dollars.
PRICE_SCALE = 1_000_000_000


class DatabentoConnection(FeedConnection):
    """FeedConnection backed by a ``databento.Live`` session.

    Subscribes to the ``trades`` schema by raw symbol. The Live client's
    subscribe/start calls are synchronous, so they run in a thread to keep the
    event loop free.
    """

    def __init__(self, api_key: str, dataset: str) -> None:
        self._api_key = api_key
        self._dataset = dataset
        self._client: Any = None  # Lazy import
        self._iterator: Any = None

    async def connect(self) -> None:
        # Lazy import: the SDK is only needed once a subscription is requested.
        import databento as db

        try:
            self._client = db.Live(key=self._api_key)
        except db.BentoError as e:
            raise FeedError(f"Databento live client could not be created: {e}") from e
        logger.info("Databento live client created for dataset %s", self._dataset)

    async def subscribe(self, symbols: Collection[str]) -> None:
        import databento as db

        symbols = sorted(symbols)
        try:
            await asyncio.to_thread(
                self._client.subscribe,
                dataset=self._dataset,
                schema="trades",
                stype_in="raw_symbol",
                symbols=symbols,
            )
        except (db.BentoError, OSError, ValueError) as e:
            raise FeedError(f"subscribe failed: {e}") from e
        logger.info("Databento: subscribed %d symbols on %s", len(symbols), self._dataset)

    async def start(self) -> None:
        import databento as db

        try:
            await asyncio.to_thread(self._client.start)
        except (db.BentoError, OSError, ValueError) as e:
            raise FeedError(f"start failed: {e}") from e
        self._iterator = aiter(self._client)
        logger.info("Databento: live session started")

    async def next_record(self) -> object | None:
        import databento as db

        try:
            record = await anext(self._iterator)
        except StopAsyncIteration:
            # Iteration ends for both clean and failed sessions; the close
            # future tells them apart.
            try:
                await self._client.wait_for_close()
            except (db.BentoError, OSError) as e:
                raise FeedError(f"live session ended with error: {e}") from e
            return None
        except (db.BentoError, OSError) as e:
            raise FeedError(f"live read failed: {e}") from e
        return _translate(record)

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        self._iterator = None
        try:
            client.terminate()
        except Exception as e:
            logger.debug("Databento terminate raised: %s", e)
        logger.info("Databento live client closed")


def _translate(record: Any) -> object:
    """Convert SDK messages into feed records. Unknown kinds pass through."""
    import databento as db

    if isinstance(record, db.SymbolMappingMsg):
        return MappingRecord(instrument_id=record.instrument_id, raw_symbol=record.stype_out_symbol)
    if isinstance(record, db.TradeMsg):
        return TradeRecord(
            instrument_id=record.instrument_id,
            price=record.price / PRICE_SCALE,
            size=record.size,
            ts_event_ns=record.ts_event,
        )
    return record


async def connect_databento(api_key: str, dataset: str) -> DatabentoConnection:
    """Build and connect a DatabentoConnection."""
    conn = DatabentoConnection(api_key=api_key, dataset=dataset)
    await conn.connect()
    return conn
