"""Forward price updates to the downstream WebSocket consumer."""

from __future__ import annotations

import asyncio
import logging

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .models import PriceUpdateEvent

logger = logging.getLogger(__name__)


class BroadcastRelay:
    """Single consumer of the multiplexer's update queue.

    Keeps one persistent WebSocket connection to ``url`` and sends every
    PriceUpdateEvent as a JSON text frame, in queue order.

    Failure handling:
      - connect fails -> retry after ``connect_retry_delay`` (10s default)
      - send fails, peer closes, or the connection errors -> drop the event in
        flight, reconnect after ``reconnect_delay`` (5s default)

    Delivery is at-most-once. While disconnected, events wait in the queue,
    which is unbounded: a sink that stays down grows memory without limit.
    """

    def __init__(
        self,
        updates: asyncio.Queue[PriceUpdateEvent],
        url: str,
        reconnect_delay: float = 5.0,
        connect_retry_delay: float = 10.0,
    ) -> None:
        self._updates = updates
        self._url = url
        self._reconnect_delay = reconnect_delay
        self._connect_retry_delay = connect_retry_delay
        self._task: asyncio.Task | None = None

        self.connected = False
        self.sent = 0
        self.dropped = 0

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="broadcast-relay")
        logger.info("Broadcast relay started, target %s", self._url)

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self.connected = False
        logger.info("Broadcast relay stopped (sent=%d dropped=%d)", self.sent, self.dropped)

    # --- Internal ---

    async def _run(self) -> None:
        while True:
            try:
                ws = await websockets.connect(self._url)
            except (OSError, WebSocketException) as e:
                logger.warning(
                    "Relay connect to %s failed: %s (retry in %.1fs)",
                    self._url,
                    e,
                    self._connect_retry_delay,
                )
                await asyncio.sleep(self._connect_retry_delay)
                continue

            self.connected = True
            logger.info("Relay connected to %s", self._url)
            try:
                await self._forward(ws)
            finally:
                self.connected = False
                await _close_quietly(ws)

            logger.warning("Relay connection lost, reconnecting in %.1fs", self._reconnect_delay)
            await asyncio.sleep(self._reconnect_delay)

    async def _forward(self, ws) -> None:
        """Send queued events until the connection faults."""
        inbound: asyncio.Task = asyncio.create_task(ws.recv(), name="relay-recv")
        outbound: asyncio.Task | None = None
        try:
            while True:
                if outbound is None:
                    outbound = asyncio.create_task(self._updates.get(), name="relay-dequeue")

                done, _ = await asyncio.wait({inbound, outbound}, return_when=asyncio.FIRST_COMPLETED)

                if inbound in done:
                    try:
                        message = inbound.result()
                    except ConnectionClosed as e:
                        logger.info("Relay peer closed the connection: %s", e)
                        return
                    except (OSError, WebSocketException) as e:
                        logger.warning("Relay connection error: %s", e)
                        return
                    logger.debug("Ignoring inbound relay frame: %r", message)
                    inbound = asyncio.create_task(ws.recv(), name="relay-recv")

                if outbound in done:
                    event: PriceUpdateEvent = outbound.result()
                    outbound = None
                    try:
                        await ws.send(event.to_json())
                    except (OSError, WebSocketException) as e:
                        self.dropped += 1
                        logger.warning("Relay send failed, dropped update for %s: %s", event.symbol, e)
                        return
                    self.sent += 1
        finally:
            if outbound is not None and outbound.done() and not outbound.cancelled():
                # Dequeued but never sent.
                self.dropped += 1
            for task in (inbound, outbound):
                if task is not None and not task.done():
                    task.cancel()
            await asyncio.gather(
                *(t for t in (inbound, outbound) if t is not None),
                return_exceptions=True,
            )


async def _close_quietly(ws) -> None:
    try:
        await ws.close()
    except (OSError, WebSocketException) as e:
        logger.debug("Relay close raised: %s", e)
