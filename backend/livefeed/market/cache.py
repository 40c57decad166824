"""Thread-safe in-memory price cache."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from threading import Condition, Lock

from .models import PriceRecord


class ReadWriteLock:
    """Any number of concurrent readers, or exactly one writer, never both.

    Writers are preferred: once a writer is waiting, new readers queue behind it
    so a steady stream of readers cannot starve the feed.
    """

    def __init__(self) -> None:
        self._cond = Condition(Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class PriceCache:
    """Last known price per key.

    Keys are canonical symbols or synthetic ``INST:<id>`` instrument keys.
    Writers: SubscriptionMultiplexer, plus the manual ingest and backfill paths.
    Readers: HTTP control surface.
    """

    def __init__(self) -> None:
        self._prices: dict[str, PriceRecord] = {}
        self._lock = ReadWriteLock()

    def put(self, key: str, record: PriceRecord) -> None:
        """Unconditional overwrite. No ordering check against ts_event_ns."""
        with self._lock.write():
            self._prices[key] = record

    def get(self, key: str) -> PriceRecord | None:
        with self._lock.read():
            return self._prices.get(key)

    def get_many(self, keys: Iterable[str]) -> dict[str, PriceRecord]:
        """Only the requested keys that are present. Missing keys are omitted."""
        with self._lock.read():
            return {key: self._prices[key] for key in keys if key in self._prices}

    def get_all(self) -> dict[str, PriceRecord]:
        """Snapshot of all current prices. Returns a shallow copy."""
        with self._lock.read():
            return dict(self._prices)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._prices)

    def __contains__(self, key: str) -> bool:
        with self._lock.read():
            return key in self._prices
