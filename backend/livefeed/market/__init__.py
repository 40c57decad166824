"""Live market data subsystem.

Public API:
    PriceRecord, PriceUpdateEvent - Immutable price value and relay event
    PriceCache                - Reader/writer locked last-price store
    SymbolTable               - Instrument id -> symbol map for the live session
    FeedConnection            - Abstract upstream session
    SubscriptionMultiplexer   - Owns the single upstream connection
    BroadcastRelay            - Forwards updates to the downstream WebSocket
    create_feed_connector     - Factory for Databento live sessions
    create_live_router        - FastAPI router factory for the control surface
"""

from .api import create_live_router
from .cache import PriceCache
from .factory import create_feed_connector
from .interface import FeedConnection
from .models import PriceRecord, PriceUpdateEvent
from .multiplexer import FeedState, SubscriptionMultiplexer
from .relay import BroadcastRelay
from .symbols import SymbolTable

__all__ = [
    "PriceRecord",
    "PriceUpdateEvent",
    "PriceCache",
    "SymbolTable",
    "FeedConnection",
    "FeedState",
    "SubscriptionMultiplexer",
    "BroadcastRelay",
    "create_feed_connector",
    "create_live_router",
]
