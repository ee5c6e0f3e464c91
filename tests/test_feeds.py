from datetime import datetime, timezone

import pytest

from config import config
from errors import UnsupportedFeedError
from feeds import FeedKind, classify_feed, intro_notification, window_size_for
from utils import cache_break_token, to_timestamp


@pytest.mark.parametrize("feed_id, kind", [
    ("intro", FeedKind.INTRO),
    ("tt0944947", FeedKind.SERIES),
    ("yt_id:UCrDkAvwZum-UTjHmzDI2iIw", FeedKind.CHANNEL),
])
def test_classify_feed(feed_id, kind):
    assert classify_feed(feed_id) == kind


@pytest.mark.parametrize("feed_id", ["xyz123", "", None, "kitsu:1"])
def test_unrecognized_feed_ids_are_rejected(feed_id):
    with pytest.raises(UnsupportedFeedError):
        classify_feed(feed_id)


def test_window_size_follows_feed_kind(monkeypatch):
    monkeypatch.setattr(config, "SERIES_WINDOW_SIZE", 3)
    monkeypatch.setattr(config, "CHANNEL_WINDOW_SIZE", 8)

    assert window_size_for(FeedKind.SERIES) == 3
    assert window_size_for(FeedKind.CHANNEL) == 8


def test_intro_notification_is_a_fresh_copy():
    first = intro_notification()
    first["title"] = "changed"

    second = intro_notification()
    assert second["title"] != "changed"
    assert second["_id"] == config.INTRO_NOTIFICATION["_id"]
    assert second["published"] == config.INTRO_PUBLISHED


def test_to_timestamp_accepts_common_date_shapes():
    expected = 1558227600
    assert to_timestamp(expected) == expected
    assert to_timestamp(expected * 1000) == expected
    assert to_timestamp("2019-05-19T01:00:00.000Z") == expected
    assert to_timestamp("Sun, 19 May 2019 01:00:00 GMT") == expected
    assert to_timestamp(datetime(2019, 5, 19, 1, tzinfo=timezone.utc)) == expected


@pytest.mark.parametrize("value", [None, "", "not a date", True, 0, -5, {"when": "now"}])
def test_to_timestamp_rejects_unusable_values(value):
    assert to_timestamp(value) is None


def test_cache_break_token_changes_once_per_period():
    period = 600
    start = 1_700_000_400

    assert cache_break_token(start, period) == cache_break_token(start + 599, period)
    assert cache_break_token(start + 600, period) == cache_break_token(start, period) + 1


def test_feed_sources_are_read_from_yaml(tmp_path, monkeypatch):
    feeds_file = tmp_path / "feeds.yaml"
    feeds_file.write_text(
        "feeds:\n"
        "  - intro\n"
        "  - id: tt0944947\n"
        "  - 42\n"
        "thresholds:\n"
        "  retention_days: 14\n"
    )
    monkeypatch.setattr(config, "FEEDS_CONFIG_PATH", str(feeds_file))
    monkeypatch.setattr(config, "FEED_IDS", [])
    monkeypatch.setattr(config, "RETENTION_DAYS", 30)

    config.reload_feed_sources()

    assert config.FEED_IDS == ["intro", "tt0944947"]
    assert config.RETENTION_DAYS == 14
    assert config.RETENTION_WINDOW == 14 * 24 * 3600
