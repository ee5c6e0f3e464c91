#!/usr/bin/env python3
"""
Feed classification.

A feed is identified only by its id, and the id's shape reveals what kind of
feed it is: the intro sentinel, an IMDb-style series id, or a channel id.
"""

from typing import Any, Dict

from config import config
from errors import UnsupportedFeedError

SERIES_ID_PREFIX = "tt"
CHANNEL_ID_PREFIX = "yt_id"


class FeedKind:
    """The kinds of feed the updater knows how to process."""

    INTRO = "intro"
    SERIES = "series"
    CHANNEL = "channel"


def classify_feed(feed_id: str) -> str:
    """Return the FeedKind for a feed id.

    Raises:
        UnsupportedFeedError: if the id matches no recognized shape.
    """
    if not isinstance(feed_id, str) or not feed_id:
        raise UnsupportedFeedError(str(feed_id))
    if feed_id == config.INTRO_FEED_ID:
        return FeedKind.INTRO
    if feed_id.startswith(SERIES_ID_PREFIX):
        return FeedKind.SERIES
    if feed_id.startswith(CHANNEL_ID_PREFIX):
        return FeedKind.CHANNEL
    raise UnsupportedFeedError(feed_id)


def window_size_for(kind: str) -> int:
    """How many of the most recent videos to request for a feed kind."""
    if kind == FeedKind.SERIES:
        return config.SERIES_WINDOW_SIZE
    return config.CHANNEL_WINDOW_SIZE


def intro_notification() -> Dict[str, Any]:
    """Return the fixed onboarding notification seeded by the intro feed."""
    notif = dict(config.INTRO_NOTIFICATION)
    notif["published"] = config.INTRO_PUBLISHED
    return notif
