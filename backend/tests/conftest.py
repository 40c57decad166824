"""Pytest configuration and fixtures."""

import pytest

from livefeed.config import Settings


@pytest.fixture
def settings():
    """Settings with a credential and delays short enough for tests."""
    return Settings(
        databento_api_key="test-key",
        hist_url="https://hist.example.test",
        relay_url="ws://relay.example.test",
        feed_reconnect_delay=0.01,
        relay_reconnect_delay=0.01,
        relay_connect_retry_delay=0.01,
        subscribe_settle_delay=0.0,
        subscribe_timeout=2.0,
    )
