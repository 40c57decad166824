"""Factory for upstream feed connections."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from ..config import Settings
from ..errors import ConfigurationError
from .interface import FeedConnection

logger = logging.getLogger(__name__)

FeedConnector = Callable[[], Awaitable[FeedConnection]]


def create_feed_connector(settings: Settings) -> FeedConnector:
    """Return the coroutine factory the multiplexer uses to open a session.

    The credential is checked when a connection is requested, not here, so a
    missing DATABENTO_API_KEY fails the triggering subscribe request instead
    of process startup.
    """

    async def connect() -> FeedConnection:
        if not settings.databento_api_key:
            raise ConfigurationError("DATABENTO_API_KEY not set")

        from .databento_client import connect_databento

        logger.info("Feed connection: Databento live (%s)", settings.dataset)
        return await connect_databento(api_key=settings.databento_api_key, dataset=settings.dataset)

    return connect
