"""Fixtures for market data tests."""

import asyncio

import pytest
import pytest_asyncio

from fakes import FakeConnector
from livefeed.market.cache import PriceCache
from livefeed.market.multiplexer import SubscriptionMultiplexer
from livefeed.market.symbols import SymbolTable


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def price_cache():
    return PriceCache()


@pytest.fixture
def symbol_table():
    return SymbolTable()


@pytest.fixture
def updates():
    return asyncio.Queue()


@pytest_asyncio.fixture
async def multiplexer(connector, price_cache, symbol_table, updates):
    mux = SubscriptionMultiplexer(
        connect=connector,
        price_cache=price_cache,
        symbol_table=symbol_table,
        updates=updates,
        reconnect_delay=0.01,
    )
    await mux.start()
    yield mux
    await mux.stop()
