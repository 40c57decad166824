"""Data models for the live feed."""

from __future__ import annotations

import json
from dataclasses import dataclass

INSTRUMENT_KEY_PREFIX = "INST:"


def canonical_symbol(symbol: str) -> str:
    """Trim whitespace and upper-case. Two symbols are equal iff this matches."""
    return symbol.strip().upper()


def instrument_key(instrument_id: int) -> str:
    """Synthetic cache key for an instrument with no (or not yet a) symbol mapping."""
    return f"{INSTRUMENT_KEY_PREFIX}{instrument_id}"


@dataclass(frozen=True, slots=True)
class PriceRecord:
    """Last known price for a cache key."""

    price: float
    ts_event_ns: int | None = None  # Unix nanoseconds

    def to_dict(self) -> dict:
        return {"price": self.price, "ts_event_ns": self.ts_event_ns}


@dataclass(frozen=True, slots=True)
class PriceUpdateEvent:
    """One trade, as pushed to the downstream relay."""

    symbol: str
    price: float
    timestamp: int  # Event time, Unix nanoseconds

    def to_dict(self) -> dict:
        return {"symbol": self.symbol, "price": self.price, "timestamp": self.timestamp}

    def to_json(self) -> str:
        """Serialize as a relay text frame."""
        return json.dumps(self.to_dict())


@dataclass(frozen=True, slots=True)
class MappingRecord:
    """Upstream message associating an instrument id with its raw symbol.

    ``raw_symbol`` is either the fixed-width byte field as sent on the wire
    or a string already decoded by the provider SDK.
    """

    instrument_id: int
    raw_symbol: bytes | str


@dataclass(frozen=True, slots=True)
class TradeRecord:
    """Upstream trade. ``price`` is already converted to dollars."""

    instrument_id: int
    price: float
    size: int
    ts_event_ns: int
