"""Abstract interface for the upstream live feed connection."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Collection


class FeedConnection(ABC):
    """Contract for one upstream live session.

    The SubscriptionMultiplexer is the only caller. A connection is built by
    the connector from ``create_feed_connector`` and used for exactly one
    session; after a read error it is closed and replaced.

    Lifecycle:
        conn = await connect()
        await conn.subscribe({"AAPL", "MSFT"})
        await conn.start()
        while (record := await conn.next_record()) is not None:
            ...
        await conn.close()
    """

    @abstractmethod
    async def subscribe(self, symbols: Collection[str]) -> None:
        """Request trades for ``symbols`` in a single batched call.

        Raises FeedError if the upstream rejects the request.
        """

    @abstractmethod
    async def start(self) -> None:
        """Begin streaming. Called once per session, after the first subscribe."""

    @abstractmethod
    async def next_record(self) -> object | None:
        """Wait for the next upstream record.

        Returns a MappingRecord, a TradeRecord or any other object (ignored by
        the caller). Returns None on clean end of stream and raises FeedError
        if the session ended with an error.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the session. Safe to call multiple times."""
