"""Instrument id to symbol mapping, fed by upstream mapping records."""

from __future__ import annotations

from .cache import ReadWriteLock
from .models import canonical_symbol

# Width of the provider's fixed C-string symbol field (terminator included).
SYMBOL_CSTR_LEN = 71


def decode_raw_symbol(raw: bytes | bytearray | memoryview | str, width: int = SYMBOL_CSTR_LEN) -> str:
    """Decode a fixed-width raw symbol field.

    Reads up to the first NUL or ``width`` bytes, whichever comes first, and
    requires printable ASCII. Raises ValueError for anything else, including
    an empty symbol.
    """
    if isinstance(raw, str):
        text = raw.split("\0", 1)[0]
        if len(text) > width:
            raise ValueError(f"raw symbol longer than {width} characters")
    else:
        buf = bytes(raw)
        if len(buf) > width:
            raise ValueError(f"raw symbol field is {len(buf)} bytes, limit is {width}")
        end = buf.find(b"\0")
        if end == -1:
            end = len(buf)
        try:
            text = buf[:end].decode("ascii")
        except UnicodeDecodeError as e:
            raise ValueError(f"raw symbol is not ASCII: {buf[:end]!r}") from e

    if not text.isprintable():
        raise ValueError(f"raw symbol has non-printable characters: {text!r}")
    symbol = canonical_symbol(text)
    if not symbol:
        raise ValueError("raw symbol is empty")
    return symbol


class SymbolTable:
    """Thread-safe InstrumentId -> Symbol map for the current streaming session.

    Writer: SubscriptionMultiplexer. Entries are overwritten by a newer mapping
    for the same instrument and only cleared when the session is rebuilt.
    """

    def __init__(self) -> None:
        self._symbols: dict[int, str] = {}
        self._lock = ReadWriteLock()

    def upsert(self, instrument_id: int, symbol: str) -> None:
        with self._lock.write():
            self._symbols[instrument_id] = symbol

    def lookup(self, instrument_id: int) -> str | None:
        with self._lock.read():
            return self._symbols.get(instrument_id)

    def clear(self) -> None:
        with self._lock.write():
            self._symbols.clear()

    def snapshot(self) -> dict[int, str]:
        with self._lock.read():
            return dict(self._symbols)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._symbols)
