"""
Upstream fetchers: Xtream API client, M3U playlist and XMLTV guide loaders.

These are thin fetch-and-parse collaborators. They raise UpstreamError for
anything that goes wrong talking to a provider; caching decisions belong to
the metadata proxy, not here.
"""

import gzip
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from lxml import etree

from config import settings
from errors import UpstreamError
from models import Source

logger = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": settings.RELAY_USER_AGENT,
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.9",
}

# Stream type in our routes -> path segment used by Xtream servers
STREAM_TYPE_PATHS = {
    "live": "live",
    "movie": "movie",
    "vod": "movie",
    "series": "series",
}


def create_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers=HEADERS,
        timeout=httpx.Timeout(
            settings.UPSTREAM_TIMEOUT,
            connect=settings.DEFAULT_CONNECTION_TIMEOUT
        ),
        follow_redirects=True,
        max_redirects=10,
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=50)
    )


async def _get(client: httpx.AsyncClient, url: str, params: Optional[dict] = None) -> httpx.Response:
    try:
        response = await client.get(url, params=params)
        response.raise_for_status()
        return response
    except httpx.HTTPStatusError as e:
        raise UpstreamError(
            f"Upstream returned {e.response.status_code} {e.response.reason_phrase}")
    except httpx.HTTPError as e:
        raise UpstreamError(f"Upstream request failed: {e}")


class XtreamClient:
    """Client for the Xtream Codes ``player_api.php`` protocol."""

    def __init__(self, base_url: str, username: str, password: str, http_client: httpx.AsyncClient):
        self.base_url = base_url.rstrip('/')
        self.username = username
        self.password = password
        self.http_client = http_client

    @classmethod
    def from_source(cls, source: Source, http_client: httpx.AsyncClient) -> "XtreamClient":
        return cls(source.url, source.username or "", source.password or "", http_client)

    async def _call(self, action: Optional[str] = None, **params) -> Any:
        query = {"username": self.username, "password": self.password}
        if action:
            query["action"] = action
        query.update({k: v for k, v in params.items() if v is not None})

        response = await _get(self.http_client, f"{self.base_url}/player_api.php", query)
        try:
            return response.json()
        except ValueError:
            raise UpstreamError(f"Xtream server returned invalid JSON for {action or 'auth'}")

    async def authenticate(self):
        data = await self._call()
        if not isinstance(data, dict) or not data.get("user_info"):
            raise UpstreamError("Xtream authentication failed")
        return data

    async def get_live_categories(self):
        return await self._call("get_live_categories")

    async def get_live_streams(self, category_id: Optional[str] = None):
        return await self._call("get_live_streams", category_id=category_id)

    async def get_vod_categories(self):
        return await self._call("get_vod_categories")

    async def get_vod_streams(self, category_id: Optional[str] = None):
        return await self._call("get_vod_streams", category_id=category_id)

    async def get_vod_info(self, vod_id: Optional[str]):
        return await self._call("get_vod_info", vod_id=vod_id)

    async def get_series_categories(self):
        return await self._call("get_series_categories")

    async def get_series(self, category_id: Optional[str] = None):
        return await self._call("get_series", category_id=category_id)

    async def get_series_info(self, series_id: Optional[str]):
        return await self._call("get_series_info", series_id=series_id)

    async def get_short_epg(self, stream_id: Optional[str], limit: Optional[str] = None):
        return await self._call("get_short_epg", stream_id=stream_id, limit=limit)

    def build_stream_url(self, stream_id: str, stream_type: str = "live", container: str = "m3u8") -> str:
        path = STREAM_TYPE_PATHS.get(stream_type, stream_type)
        return f"{self.base_url}/{path}/{self.username}/{self.password}/{stream_id}.{container}"

    def get_xmltv_url(self) -> str:
        query = urlencode({"username": self.username, "password": self.password})
        return f"{self.base_url}/xmltv.php?{query}"


# ============================================================================
# M3U PLAYLISTS
# ============================================================================

_EXTINF_ATTR = re.compile(r'([\w-]+)="([^"]*)"')


def parse_m3u(content: str) -> Dict[str, Any]:
    channels: List[Dict[str, Any]] = []
    groups: List[str] = []
    pending: Optional[Dict[str, Any]] = None

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("#EXTINF"):
            header, _, name = line.partition(",")
            attrs = dict(_EXTINF_ATTR.findall(header))
            pending = {
                "tvgId": attrs.get("tvg-id", ""),
                "tvgName": attrs.get("tvg-name", ""),
                "tvgLogo": attrs.get("tvg-logo", ""),
                "groupTitle": attrs.get("group-title", "Uncategorized") or "Uncategorized",
                "name": name.strip() or attrs.get("tvg-name", ""),
            }
        elif line.startswith("#"):
            continue
        elif pending is not None:
            pending["id"] = f"m3u_{len(channels)}"
            pending["url"] = line
            channels.append(pending)
            if pending["groupTitle"] not in groups:
                groups.append(pending["groupTitle"])
            pending = None

    return {"channels": channels, "groups": groups}


async def fetch_and_parse_m3u(client: httpx.AsyncClient, url: str) -> Dict[str, Any]:
    response = await _get(client, url)
    data = parse_m3u(response.text)
    logger.info(f"Parsed {len(data['channels'])} channels from playlist {url}")
    return data


# ============================================================================
# XMLTV GUIDES
# ============================================================================

def parse_xmltv_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    value = value.strip()
    try:
        return datetime.strptime(value, "%Y%m%d%H%M%S %z")
    except ValueError:
        pass
    try:
        return datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def parse_xmltv(content: bytes) -> Dict[str, Any]:
    if content[:2] == b"\x1f\x8b":
        try:
            content = gzip.decompress(content)
        except (OSError, EOFError) as e:
            raise UpstreamError(f"Corrupt gzipped XMLTV document: {e}")

    parser = etree.XMLParser(recover=True, huge_tree=True, resolve_entities=False)
    try:
        root = etree.fromstring(content, parser=parser)
    except etree.XMLSyntaxError as e:
        raise UpstreamError(f"Invalid XMLTV document: {e}")
    if root is None:
        raise UpstreamError("Empty XMLTV document")

    channels = []
    for elem in root.iter("channel"):
        icon = elem.find("icon")
        channels.append({
            "id": elem.get("id"),
            "name": elem.findtext("display-name", default="").strip(),
            "icon": icon.get("src") if icon is not None else None,
        })

    programmes = []
    for elem in root.iter("programme"):
        start = parse_xmltv_time(elem.get("start"))
        stop = parse_xmltv_time(elem.get("stop"))
        if start is None or stop is None:
            continue
        programmes.append({
            "channelId": elem.get("channel"),
            "start": start.isoformat(),
            "stop": stop.isoformat(),
            "title": elem.findtext("title", default="").strip(),
            "desc": elem.findtext("desc", default="").strip(),
        })

    return {"channels": channels, "programmes": programmes}


async def fetch_and_parse_epg(client: httpx.AsyncClient, url: str) -> Dict[str, Any]:
    response = await _get(client, url)
    data = parse_xmltv(response.content)
    logger.info(
        f"Parsed {len(data['channels'])} channels and {len(data['programmes'])} programmes from {url}")
    return data


def get_current_and_upcoming(programmes: List[Dict[str, Any]], channel_id: str,
                             now: Optional[datetime] = None, limit: int = 5) -> Dict[str, Any]:
    """Programme airing at ``now`` on a channel, plus the next few after it."""
    now = now or datetime.now(timezone.utc)
    current = None
    upcoming = []
    for programme in programmes:
        if programme.get("channelId") != channel_id:
            continue
        start = datetime.fromisoformat(programme["start"])
        stop = datetime.fromisoformat(programme["stop"])
        if start <= now < stop:
            current = programme
        elif start > now:
            upcoming.append(programme)

    upcoming.sort(key=lambda p: datetime.fromisoformat(p["start"]))
    return {"current": current, "upcoming": upcoming[:limit]}
