#!/usr/bin/env python3
"""Common error types shared across modules.

Every per-feed failure derives from FeedUpdateError so the batch entry point
can report it against the feed it belongs to.
"""

from typing import Optional


class FeedUpdateError(Exception):
    """Base class for failures scoped to a single feed update.

    Attributes:
        feed_id: The feed being updated when the error occurred, if known.
    """

    def __init__(self, message: str, feed_id: Optional[str] = None):
        super().__init__(message)
        self.feed_id = feed_id


class UnsupportedFeedError(FeedUpdateError):
    """Raised when a feed id matches none of the recognized shapes."""

    def __init__(self, feed_id: str):
        super().__init__(f"unsupported feed ID: {feed_id}", feed_id=feed_id)


class FetchError(FeedUpdateError):
    """Raised when the upstream addon cannot deliver metadata for a feed.

    Attributes:
        status: HTTP status code, when the upstream answered at all.
    """

    def __init__(self, message: str, feed_id: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message, feed_id=feed_id)
        self.status = status


class MappingError(FeedUpdateError):
    """Raised when upstream metadata cannot be turned into notifications."""


class CommitError(FeedUpdateError):
    """Raised when the store rejects a batch; nothing from the batch is applied."""


__all__ = ["FeedUpdateError", "UnsupportedFeedError", "FetchError", "MappingError", "CommitError"]
