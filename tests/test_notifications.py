import pytest

from config import config
from notifications import map_meta_to_notifs

NOW = 1_700_000_000
HOUR = 3600


def test_series_videos_map_to_episode_notifications():
    meta = {
        "id": "tt0944947",
        "type": "series",
        "name": "Game of Thrones",
        "videos": [
            {"id": "tt0944947:8:6", "season": 8, "episode": 6, "name": "The Iron Throne",
             "released": "2019-05-19T01:00:00.000Z", "thumbnail": "https://example.com/8x6.jpg"},
        ],
    }

    [notif] = map_meta_to_notifs(meta, now=NOW)

    assert notif["_id"] == "tt0944947 8 6"
    assert notif["video_id"] == "tt0944947:8:6"
    assert notif["item_id"] == "tt0944947"
    assert notif["item_name"] == "Game of Thrones"
    assert notif["title"] == "The Iron Throne"
    assert notif["published"] == 1558227600
    assert notif["created"] == NOW
    assert notif["type"] == "notification"
    assert notif["thumbnail"] == "https://example.com/8x6.jpg"
    assert notif["background"] == f"{config.METAHUB_URL}/background/small/tt0944947/img?from=notifs"


def test_unreleased_videos_are_skipped_unless_they_have_streams(monkeypatch):
    monkeypatch.setattr(config, "EPISODE_OUT_FOR_HOURS", 6)
    meta = {
        "id": "tt7440726",
        "videos": [
            {"season": 1, "episode": 1, "released": NOW - 7 * HOUR},
            {"season": 1, "episode": 2, "released": NOW - HOUR},
            {"season": 1, "episode": 3, "released": NOW - HOUR, "streams": [{"url": "https://example.com/s"}]},
            {"season": 1, "episode": 4, "released": NOW + 24 * HOUR},
        ],
    }

    ids = sorted(n["_id"] for n in map_meta_to_notifs(meta, now=NOW))

    assert ids == ["tt7440726 1 1", "tt7440726 1 3"]


def test_channel_videos_use_video_ids():
    meta = {
        "id": "yt_id:UCabc",
        "type": "channel",
        "name": "Some Channel",
        "videos": [
            {"id": "dQw4w9WgXcQ", "title": "A video", "publishedAt": "2023-11-01T10:00:00Z"},
            {"title": "No id", "publishedAt": "2023-11-01T10:00:00Z"},
        ],
    }

    [notif] = map_meta_to_notifs(meta, now=NOW)

    assert notif["_id"] == "yt_id:UCabc dQw4w9WgXcQ"
    assert notif["item_type"] == "channel"
    assert notif["title"] == "A video"


def test_videos_without_release_date_are_skipped():
    meta = {"id": "tt1", "videos": [{"season": 1, "episode": 1}, "not-a-video"]}

    assert map_meta_to_notifs(meta, now=NOW) == []


def test_meta_without_videos_maps_to_nothing():
    assert map_meta_to_notifs({"id": "tt1"}, now=NOW) == []


def test_malformed_meta_raises():
    with pytest.raises(TypeError):
        map_meta_to_notifs(["not", "a", "meta"], now=NOW)
    with pytest.raises(ValueError):
        map_meta_to_notifs({"videos": []}, now=NOW)
