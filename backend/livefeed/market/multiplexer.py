"""Single upstream connection shared by every subscription request."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from ..errors import ConfigurationError, FeedClosedError, FeedError, SubscriptionError
from .cache import PriceCache
from .factory import FeedConnector
from .interface import FeedConnection
from .models import MappingRecord, PriceRecord, PriceUpdateEvent, TradeRecord, instrument_key
from .symbols import SymbolTable, decode_raw_symbol

logger = logging.getLogger(__name__)


class FeedState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSED = "closed"


class _StreamEnd(enum.Enum):
    EOF = "eof"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class _SubscribeBatch:
    symbols: frozenset[str]
    result: asyncio.Future | None  # None for internal resubscribe after reconnect


class SubscriptionMultiplexer:
    """Owns exactly one upstream FeedConnection, however many requests arrive.

    Subscription batches arrive on a control channel and are merged into the
    session's subscription set; only symbols not already subscribed reach the
    upstream, in one batched call. Upstream records are routed into the
    PriceCache, the SymbolTable and the outbound update queue in arrival order.

    States:
        DISCONNECTED -> CONNECTING -> STREAMING -> DISCONNECTED (read error)
        STREAMING -> CLOSED (clean end of stream, or stop())

    The subscription set and the streaming flag are only touched by the
    control loop. Everything external goes through ``request_subscribe``.
    """

    def __init__(
        self,
        connect: FeedConnector,
        price_cache: PriceCache,
        symbol_table: SymbolTable,
        updates: asyncio.Queue[PriceUpdateEvent],
        reconnect_delay: float = 5.0,
    ) -> None:
        self._connect = connect
        self._cache = price_cache
        self._symbols = symbol_table
        self._updates = updates
        self._reconnect_delay = reconnect_delay

        self._control: asyncio.Queue[_SubscribeBatch] = asyncio.Queue()
        self._state = FeedState.DISCONNECTED
        self._connection: FeedConnection | None = None
        self._subscribed: set[str] = set()
        self._streaming_started = False
        self._task: asyncio.Task | None = None

        # Pending reads carried across loop iterations so neither is lost
        # when the other completes first.
        self._control_read: asyncio.Task | None = None
        self._record_read: asyncio.Task | None = None

        self.trades_received = 0
        self.mappings_received = 0

    # --- Public API ---

    @property
    def state(self) -> FeedState:
        return self._state

    def subscribed_symbols(self) -> frozenset[str]:
        return frozenset(self._subscribed)

    async def start(self) -> None:
        """Start the control loop. No upstream connection is opened until the
        first subscription request arrives."""
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="feed-multiplexer")
        logger.info("Feed multiplexer started")

    async def stop(self) -> None:
        """Stop the loop, close the upstream session. Safe to call multiple times."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._state = FeedState.CLOSED
        logger.info("Feed multiplexer stopped")

    def request_subscribe(self, symbols: Iterable[str]) -> asyncio.Future:
        """Enqueue a batch of canonical symbols. Does not block.

        The returned future resolves to the symbols this batch newly subscribed
        (empty if all were already subscribed), or fails with SubscriptionError.
        Symbols are not re-normalized here.
        """
        if self._state is FeedState.CLOSED:
            raise FeedClosedError("live feed is closed")
        result = asyncio.get_running_loop().create_future()
        self._control.put_nowait(_SubscribeBatch(frozenset(symbols), result))
        return result

    async def subscribe(self, symbols: Iterable[str]) -> frozenset[str]:
        return await self.request_subscribe(symbols)

    # --- Control loop ---

    async def _run(self) -> None:
        try:
            while True:
                if self._state is FeedState.STREAMING:
                    end = await self._stream()
                    if end is _StreamEnd.EOF:
                        logger.info("Upstream stream ended")
                        return
                    await self._rebuild()
                else:
                    await self._add_symbols(await self._next_batch())
        finally:
            await self._shutdown()

    async def _next_batch(self) -> _SubscribeBatch:
        if self._control_read is None:
            self._control_read = asyncio.create_task(self._control.get(), name="feed-control-read")
        try:
            return await self._control_read
        finally:
            if self._control_read.done():
                self._control_read = None

    async def _stream(self) -> _StreamEnd:
        """Service control batches and upstream records, whichever is ready first."""
        while True:
            if self._control_read is None:
                self._control_read = asyncio.create_task(self._control.get(), name="feed-control-read")
            if self._record_read is None:
                self._record_read = asyncio.create_task(
                    self._connection.next_record(), name="feed-record-read"
                )

            done, _ = await asyncio.wait(
                {self._control_read, self._record_read},
                return_when=asyncio.FIRST_COMPLETED,
            )

            if self._control_read in done:
                batch = self._control_read.result()
                self._control_read = None
                await self._add_symbols(batch)

            if self._record_read in done:
                read, self._record_read = self._record_read, None
                try:
                    record = read.result()
                except FeedError as e:
                    logger.error("Upstream read failed: %s", e)
                    return _StreamEnd.ERROR
                except Exception:
                    logger.exception("Upstream read failed unexpectedly")
                    return _StreamEnd.ERROR
                if record is None:
                    self._streaming_started = False
                    return _StreamEnd.EOF
                self._route(record)

    async def _add_symbols(self, batch: _SubscribeBatch) -> bool:
        new = batch.symbols - self._subscribed
        if not new:
            logger.debug("All %d requested symbols already subscribed", len(batch.symbols))
            _resolve(batch, frozenset())
            return True

        self._subscribed |= new
        try:
            if self._connection is None:
                self._state = FeedState.CONNECTING
                self._connection = await self._connect()
            await self._connection.subscribe(new)
            if not self._streaming_started:
                await self._connection.start()
                self._streaming_started = True
                self._state = FeedState.STREAMING
        except asyncio.CancelledError:
            self._subscribed -= new
            _fail(batch, FeedClosedError("live feed is closed"))
            raise
        except Exception as e:
            self._subscribed -= new
            logger.error("Failed to subscribe %s: %s", sorted(new), e)
            if not self._streaming_started:
                await self._discard_connection()
                self._state = FeedState.DISCONNECTED
            if isinstance(e, ConfigurationError):
                _fail(batch, e)
            else:
                _fail(batch, SubscriptionError(f"Failed to subscribe: {e}"))
            return False

        logger.info("Subscribed %d new symbols: %s", len(new), sorted(new))
        _resolve(batch, frozenset(new))
        return True

    async def _rebuild(self) -> None:
        """Recover from a read error: fixed delay, new session, resubscribe.

        The subscription set is reset with the session and its previous
        content is replayed on the new connection as one batch. Instrument ids
        are per session, so the mapping table is cleared too.

        The control channel stays live while waiting: a request arriving
        during the delay triggers an immediate attempt with its symbols merged
        into the replay, and fails with the attempt's error if the upstream is
        still unreachable.
        """
        self._state = FeedState.DISCONNECTED
        self._streaming_started = False
        await self._discard_connection()

        carried = frozenset(self._subscribed)
        self._subscribed.clear()
        self._symbols.clear()
        if not carried:
            return

        while True:
            logger.warning("Rebuilding upstream connection in %.1fs", self._reconnect_delay)
            batch = await self._next_batch_within(self._reconnect_delay)
            if batch is None:
                rebuilt = await self._add_symbols(_SubscribeBatch(carried, None))
            else:
                rebuilt = await self._rebuild_with(carried, batch)
            if rebuilt:
                logger.info("Upstream rebuilt, %d symbols resubscribed", len(carried))
                return

    async def _next_batch_within(self, timeout: float) -> _SubscribeBatch | None:
        """Next control batch, or None if none arrives within ``timeout``."""
        if self._control_read is None:
            self._control_read = asyncio.create_task(self._control.get(), name="feed-control-read")
        done, _ = await asyncio.wait({self._control_read}, timeout=timeout)
        if not done:
            return None
        batch = self._control_read.result()
        self._control_read = None
        return batch

    async def _rebuild_with(self, carried: frozenset[str], batch: _SubscribeBatch) -> bool:
        outcome = asyncio.get_running_loop().create_future()
        try:
            rebuilt = await self._add_symbols(_SubscribeBatch(carried | batch.symbols, outcome))
        except asyncio.CancelledError:
            _fail(batch, FeedClosedError("live feed is closed"))
            raise
        if rebuilt:
            _resolve(batch, batch.symbols - carried)
        else:
            _fail(batch, outcome.exception())
        return rebuilt

    # --- Record routing ---

    def _route(self, record: object) -> None:
        if isinstance(record, TradeRecord):
            self._on_trade(record)
        elif isinstance(record, MappingRecord):
            self._on_mapping(record)

    def _on_mapping(self, record: MappingRecord) -> None:
        try:
            symbol = decode_raw_symbol(record.raw_symbol)
        except ValueError as e:
            logger.warning("Skipping malformed mapping for instrument %d: %s", record.instrument_id, e)
            return
        self._symbols.upsert(record.instrument_id, symbol)
        self.mappings_received += 1
        logger.info("Symbol mapping: instrument_id=%d -> %s", record.instrument_id, symbol)

    def _on_trade(self, record: TradeRecord) -> None:
        price = PriceRecord(price=record.price, ts_event_ns=record.ts_event_ns)
        inst_key = instrument_key(record.instrument_id)
        self._cache.put(inst_key, price)

        symbol = self._symbols.lookup(record.instrument_id)
        if symbol is not None:
            self._cache.put(symbol, price)

        self._updates.put_nowait(
            PriceUpdateEvent(symbol=symbol or inst_key, price=record.price, timestamp=record.ts_event_ns)
        )
        self.trades_received += 1
        logger.debug(
            "Trade #%d: %s price=%.4f size=%d",
            self.trades_received,
            symbol or inst_key,
            record.price,
            record.size,
        )

    # --- Teardown ---

    async def _discard_connection(self) -> None:
        if self._record_read is not None:
            self._record_read.cancel()
            await asyncio.gather(self._record_read, return_exceptions=True)
            self._record_read = None
        if self._connection is not None:
            conn, self._connection = self._connection, None
            try:
                await conn.close()
            except Exception as e:
                logger.warning("Error closing upstream connection: %s", e)

    async def _shutdown(self) -> None:
        self._state = FeedState.CLOSED
        self._streaming_started = False
        await self._discard_connection()

        pending: list[_SubscribeBatch] = []
        if self._control_read is not None:
            if self._control_read.done() and not self._control_read.cancelled():
                pending.append(self._control_read.result())
            else:
                self._control_read.cancel()
                await asyncio.gather(self._control_read, return_exceptions=True)
            self._control_read = None
        while not self._control.empty():
            pending.append(self._control.get_nowait())
        for batch in pending:
            _fail(batch, FeedClosedError("live feed is closed"))


def _resolve(batch: _SubscribeBatch, added: frozenset[str]) -> None:
    if batch.result is not None and not batch.result.done():
        batch.result.set_result(added)


def _fail(batch: _SubscribeBatch, error: Exception) -> None:
    if batch.result is not None and not batch.result.done():
        batch.result.set_exception(error)
