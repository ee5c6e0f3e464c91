#!/usr/bin/env python3
"""
Addon metadata fetcher.

Fetches the `meta` resource of a series or channel from the upstream Stremio
addons (Cinemeta for series, the channels addon for channels):

    GET {base}/meta/{type}/{id}/lastVideos={n}&cacheBreak={token}.json

The cache-break token changes once per refresh period, so any HTTP cache in
front of the addon can serve a response for a whole period.
"""

from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import FetchError
from feeds import FeedKind
from telemetry import trace_span

logger = get_logger("addon")

HTTP_OK = 200

EXTRA_PARAM_NAMES = {
    "windowSize": "lastVideos",
    "cacheBreak": "cacheBreak",
}


class AddonFetcher:
    """Fetches raw feed metadata over HTTP with one shared aiohttp session."""

    def __init__(self, session: Optional[ClientSession] = None, base_urls: Optional[Dict[str, str]] = None):
        self.session = session
        self._owns_session = session is None
        self.base_urls = base_urls or {
            FeedKind.SERIES: config.CINEMETA_URL,
            FeedKind.CHANNEL: config.CHANNELS_URL,
        }

    async def __aenter__(self) -> "AddonFetcher":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def initialize(self) -> None:
        """Create the HTTP session if one was not supplied."""
        if self.session is None:
            self.session = ClientSession(
                headers={"User-Agent": config.USER_AGENT},
                timeout=ClientTimeout(total=config.HTTP_TIMEOUT),
            )
            self._owns_session = True

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    def build_url(self, kind: str, feed_id: str, extra: Dict[str, Any]) -> str:
        """Return the addon URL for a feed's meta resource."""
        base = self.base_urls.get(kind)
        if not base:
            raise FetchError(f"No addon configured for feed kind '{kind}'", feed_id=feed_id)
        params = [(EXTRA_PARAM_NAMES.get(name, name), value) for name, value in extra.items() if value is not None]
        path = f"{base}/meta/{quote(kind, safe='')}/{quote(feed_id, safe='')}"
        if params:
            path += "/" + urlencode(params, quote_via=quote)
        return path + ".json"

    @trace_span(
        "addon.get",
        tracer_name="addon",
        attr_from_args=lambda self, kind, feed_id, extra=None: {
            "feed.kind": kind,
            "feed.id": feed_id,
        },
    )
    async def get(self, kind: str, feed_id: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Fetch the meta object for a feed.

        Args:
            kind: FeedKind.SERIES or FeedKind.CHANNEL
            feed_id: The feed id, passed to the addon as the meta id
            extra: Query parameters; `windowSize` and `cacheBreak` are understood

        Raises:
            FetchError: on transport failures, non-200 answers or malformed bodies.
        """
        if self.session is None:
            await self.initialize()

        url = self.build_url(kind, feed_id, extra or {})
        logger.debug(f"Fetching {kind} meta for {feed_id} from {url}")
        try:
            async with self.session.get(url) as response:
                if response.status != HTTP_OK:
                    raise FetchError(
                        f"Addon answered HTTP {response.status} for {feed_id}",
                        feed_id=feed_id,
                        status=response.status,
                    )
                body = await response.json(content_type=None)
        except (ClientError, TimeoutError) as e:
            raise FetchError(f"Addon request failed for {feed_id}: {e.__class__.__name__} {e}", feed_id=feed_id) from e
        except ValueError as e:
            raise FetchError(f"Addon returned invalid JSON for {feed_id}: {e}", feed_id=feed_id) from e

        meta = body.get("meta") if isinstance(body, dict) else None
        if not isinstance(meta, dict):
            raise FetchError(f"Addon response for {feed_id} has no meta object", feed_id=feed_id)
        return meta
