"""Tests for the feed connection factory."""

from dataclasses import replace
from unittest.mock import AsyncMock, patch

import pytest

from livefeed.errors import ConfigurationError
from livefeed.market.factory import create_feed_connector


@pytest.mark.asyncio
class TestFactory:
    """Tests for create_feed_connector."""

    async def test_missing_api_key_fails_on_connect(self, settings):
        """Test that a missing key fails the connection attempt, not construction."""
        connect = create_feed_connector(replace(settings, databento_api_key=None))

        with pytest.raises(ConfigurationError, match="DATABENTO_API_KEY not set"):
            await connect()

    async def test_empty_api_key_fails(self, settings):
        connect = create_feed_connector(replace(settings, databento_api_key=""))

        with pytest.raises(ConfigurationError):
            await connect()

    async def test_connects_with_key_and_dataset(self, settings):
        """Test that the Databento connection receives the configured credential."""
        sentinel = object()
        mock_connect = AsyncMock(return_value=sentinel)

        with patch("livefeed.market.databento_client.connect_databento", mock_connect):
            conn = await create_feed_connector(replace(settings, dataset="XNAS.ITCH"))()

        assert conn is sentinel
        mock_connect.assert_awaited_once_with(api_key="test-key", dataset="XNAS.ITCH")

    async def test_each_call_opens_new_connection(self, settings):
        mock_connect = AsyncMock(side_effect=[object(), object()])

        with patch("livefeed.market.databento_client.connect_databento", mock_connect):
            connect = create_feed_connector(settings)
            first = await connect()
            second = await connect()

        assert first is not second
        assert mock_connect.await_count == 2
