"""
Cache-aware dispatch for provider metadata (categories, stream lists, EPG).

Every fetch goes through the same policy: read the cache unless a refresh
is forced, otherwise call the upstream fetcher and write the result back.
Only listings are cached; auth and per-item lookups always go upstream.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from cache_store import CacheStore
from config import settings
from errors import BadRequestError
from models import Source, SourceType
from upstream import (
    XtreamClient,
    fetch_and_parse_epg,
    fetch_and_parse_m3u,
    get_current_and_upcoming,
)

logger = logging.getLogger(__name__)

CACHEABLE_XTREAM_ACTIONS = frozenset({
    "live_categories", "live_streams",
    "vod_categories", "vod_streams",
    "series_categories", "series",
})

XTREAM_ACTIONS = CACHEABLE_XTREAM_ACTIONS | {"auth", "vod_info", "series_info", "short_epg"}

XTREAM_NAMESPACE = "xtream"
M3U_NAMESPACE = "m3u"
EPG_NAMESPACE = "epg"
M3U_KEY = "playlist"
EPG_KEY = "data"


def parse_max_age_hours(value: Optional[str]) -> int:
    """Query-string ``maxAge`` in hours; anything unusable means the default."""
    try:
        hours = int(value) if value is not None else 0
    except (TypeError, ValueError):
        hours = 0
    return hours if hours > 0 else settings.DEFAULT_CACHE_MAX_AGE_HOURS


def xtream_cache_key(action: str, category_id: Optional[str] = None) -> str:
    return f"{action}_{category_id}" if category_id else action


class MetadataProxy:
    def __init__(self, cache: CacheStore, http_client: httpx.AsyncClient):
        self.cache = cache
        self.http_client = http_client

    async def _cached(self, namespace: str, source_id: str, key: str,
                      force_refresh: bool, max_age_hours: int, loader):
        max_age_ms = max_age_hours * 60 * 60 * 1000
        if not force_refresh:
            cached = self.cache.get(namespace, source_id, key, max_age_ms)
            if cached is not None:
                logger.debug(f"Cache hit for {namespace}/{source_id}/{key}")
                return cached

        data = await loader()
        self.cache.set(namespace, source_id, key, data)
        return data

    async def fetch_xtream(
        self,
        source: Source,
        action: str,
        params: Dict[str, Optional[str]],
        force_refresh: bool = False,
        max_age_hours: Optional[int] = None
    ) -> Any:
        if action not in XTREAM_ACTIONS:
            raise BadRequestError("Unknown action")

        api = XtreamClient.from_source(source, self.http_client)
        category_id = params.get("category_id")

        async def load():
            logger.info(f"Fetching Xtream {action} for source {source.id}")
            if action == "auth":
                return await api.authenticate()
            if action == "live_categories":
                return await api.get_live_categories()
            if action == "live_streams":
                return await api.get_live_streams(category_id)
            if action == "vod_categories":
                return await api.get_vod_categories()
            if action == "vod_streams":
                return await api.get_vod_streams(category_id)
            if action == "vod_info":
                return await api.get_vod_info(params.get("vod_id"))
            if action == "series_categories":
                return await api.get_series_categories()
            if action == "series":
                return await api.get_series(category_id)
            if action == "series_info":
                return await api.get_series_info(params.get("series_id"))
            return await api.get_short_epg(params.get("stream_id"), params.get("limit"))

        if action not in CACHEABLE_XTREAM_ACTIONS:
            return await load()

        return await self._cached(
            XTREAM_NAMESPACE, source.id, xtream_cache_key(action, category_id),
            force_refresh, max_age_hours or settings.DEFAULT_CACHE_MAX_AGE_HOURS, load)

    def xtream_stream_url(self, source: Source, stream_id: str,
                          stream_type: str = "live", container: str = "m3u8") -> str:
        return XtreamClient.from_source(source, self.http_client).build_stream_url(
            stream_id, stream_type, container)

    async def fetch_m3u(self, source: Source, force_refresh: bool = False,
                        max_age_hours: Optional[int] = None) -> Any:
        return await self._cached(
            M3U_NAMESPACE, source.id, M3U_KEY,
            force_refresh, max_age_hours or settings.DEFAULT_CACHE_MAX_AGE_HOURS,
            lambda: fetch_and_parse_m3u(self.http_client, source.url))

    async def fetch_epg(self, source: Source, force_refresh: bool = False,
                        max_age_hours: Optional[int] = None) -> Any:
        url = source.url
        if source.type == SourceType.XTREAM:
            url = XtreamClient.from_source(source, self.http_client).get_xmltv_url()

        return await self._cached(
            EPG_NAMESPACE, source.id, EPG_KEY,
            force_refresh, max_age_hours or settings.DEFAULT_CACHE_MAX_AGE_HOURS,
            lambda: fetch_and_parse_epg(self.http_client, url))

    async def epg_for_channels(self, source: Source, channel_ids: List[str]) -> Dict[str, Any]:
        data = await self.fetch_epg(source)
        programmes = data.get("programmes", []) if isinstance(data, dict) else []
        return {
            str(channel_id): get_current_and_upcoming(programmes, str(channel_id))
            for channel_id in channel_ids
        }

    def clear_source(self, source_id: str):
        self.cache.clear_source(source_id)

    def clear_epg(self, source_id: str):
        self.cache.clear_entry(EPG_NAMESPACE, source_id, EPG_KEY)
