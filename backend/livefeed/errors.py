"""Exception types shared by the feed components and the HTTP surface.

Each exception carries the HTTP status the control surface answers with;
``livefeed.main`` renders them as ``{"error": str(exc)}``.
"""

from __future__ import annotations


class LiveFeedError(Exception):
    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(LiveFeedError):
    """A required setting (usually the upstream credential) is missing or invalid."""


class InvalidRequestError(LiveFeedError):
    status_code = 400


class FeedError(LiveFeedError):
    """Upstream connection fault raised by a FeedConnection."""

    status_code = 502


class SubscriptionError(LiveFeedError):
    """Upstream connect/subscribe/start failed; the batch was rolled back."""


class FeedClosedError(LiveFeedError):
    """The multiplexer loop has terminated and accepts no more requests."""

    status_code = 503


class UpstreamQueryError(LiveFeedError):
    """Historical API request failed or answered with a non-success status."""

    status_code = 502


class NoTradesError(LiveFeedError):
    status_code = 404
