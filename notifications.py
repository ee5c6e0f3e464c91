#!/usr/bin/env python3
"""
Mapping from addon metadata to notification records.

A notification is created for every video of a series or channel that is
actually watchable: either it already has streams, or it was released long
enough ago (EPISODE_OUT_FOR_HOURS) that it should be available by now.
"""

from time import time
from typing import Any, Dict, List, Optional

from config import config, get_logger
from utils import to_timestamp

logger = get_logger("notifications")

RELEASE_DATE_FIELDS = ("released", "firstAired", "publishedAt")


def _release_timestamp(video: Dict[str, Any]) -> Optional[int]:
    for field in RELEASE_DATE_FIELDS:
        timestamp = to_timestamp(video.get(field))
        if timestamp is not None:
            return timestamp
    return None


def _is_released(video: Dict[str, Any], published: int, now: int) -> bool:
    if video.get("streams"):
        return True
    return published < now - config.EPISODE_OUT_FOR_HOURS * 3600


def _background_url(meta_id: str) -> str:
    return f"{config.METAHUB_URL}/background/small/{meta_id}/img?from=notifs"


def _series_identity(meta_id: str, video: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    season = video.get("season")
    episode = video.get("episode", video.get("number"))
    if season is None or episode is None:
        return None
    return {
        "_id": f"{meta_id} {season} {episode}",
        "video_id": f"{meta_id}:{season}:{episode}",
        "item_type": "series",
        "season": season,
        "episode": episode,
    }


def _channel_identity(meta_id: str, video: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    video_id = video.get("id")
    if not video_id:
        return None
    return {
        "_id": f"{meta_id} {video_id}",
        "video_id": video_id,
        "item_type": "channel",
    }


def map_meta_to_notifs(meta: Dict[str, Any], now: Optional[float] = None) -> List[Dict[str, Any]]:
    """Turn an addon meta object into notification records.

    Args:
        meta: The `meta` object returned by the addon.
        now: Reference time in epoch seconds (defaults to the current time).

    Returns:
        Notification dicts carrying at least `_id` and `published` (epoch
        seconds). Order is not significant.
    """
    if not isinstance(meta, dict):
        raise TypeError(f"meta must be a mapping, got {type(meta).__name__}")

    meta_id = meta.get("id")
    if not meta_id:
        raise ValueError("meta has no id")

    now = int(time() if now is None else now)
    is_channel = meta.get("type") == "channel"
    name = meta.get("name") or ""
    background = _background_url(meta_id)

    notifs: List[Dict[str, Any]] = []
    for video in meta.get("videos") or []:
        if not isinstance(video, dict):
            continue
        published = _release_timestamp(video)
        if published is None:
            logger.debug(f"Skipping video without release date in {meta_id}: {video.get('id')}")
            continue
        if not _is_released(video, published, now):
            continue

        identity = _channel_identity(meta_id, video) if is_channel else _series_identity(meta_id, video)
        if identity is None:
            logger.debug(f"Skipping video without identity in {meta_id}: {video.get('id')}")
            continue

        notif = {
            **identity,
            "item_id": meta_id,
            "item_name": name,
            "name": name,
            "title": video.get("name") or video.get("title") or "",
            "background": background,
            "type": "notification",
            "published": published,
            "created": now,
        }
        if meta.get("imdb_id"):
            notif["imdb_id"] = meta["imdb_id"]
        if video.get("thumbnail"):
            notif["thumbnail"] = video["thumbnail"]
        notifs.append(notif)

    return notifs
