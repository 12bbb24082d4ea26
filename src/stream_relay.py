"""
HTTP relay for remote HLS manifests and media segments.

The browser cannot fetch many provider streams itself: CDNs reject foreign
origins and some providers lock streams to the IP that requested the
manifest. The relay fetches on the browser's behalf and rewrites every URI
in a manifest to point back at itself, so segments, keys and alternate
renditions follow the same path.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import quote, urljoin, urlparse

import httpx
from fastapi.responses import Response, StreamingResponse

from config import settings

logger = logging.getLogger(__name__)

MANIFEST_MARKER = "#EXTM3U"
HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"

_URI_ATTRIBUTE = re.compile(r'URI="([^"]+)"')


@dataclass
class RelaySession:
    target_url: str
    is_manifest: bool = False
    rewritten_base_url: Optional[str] = None


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def manifest_base_url(url: str) -> str:
    """Scheme, host and directory of a manifest URL, with a trailing slash."""
    parsed = urlparse(url)
    directory = parsed.path[:parsed.path.rfind('/') + 1] or '/'
    return f"{parsed.scheme}://{parsed.netloc}{directory}"


def build_upstream_headers(target_url: str, origin_overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    overrides = settings.ORIGIN_OVERRIDES if origin_overrides is None else origin_overrides
    host = (urlparse(target_url).hostname or "").lower()

    origin = origin_of(target_url)
    for suffix, forced_origin in overrides.items():
        if host == suffix or host.endswith(f".{suffix}"):
            origin = forced_origin
            break

    return {
        "User-Agent": settings.RELAY_USER_AGENT,
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9",
        "Origin": origin,
        "Referer": f"{origin}/",
    }


def is_manifest_response(content_type: str, url: str) -> bool:
    return "mpegurl" in content_type.lower() or ".m3u8" in url.lower()


def relay_url(relay_endpoint: str, absolute_url: str) -> str:
    return f"{relay_endpoint}?url={quote(absolute_url, safe='')}"


def _resolve(reference: str, base_url: str) -> str:
    absolute = urljoin(base_url, reference)
    parsed = urlparse(absolute)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"cannot resolve {reference!r}")
    return absolute


def rewrite_manifest(manifest: str, manifest_url: str, relay_endpoint: str) -> str:
    """
    Point every URI in an HLS manifest back at the relay.

    Media lines are resolved against the manifest's directory and replaced
    with a relay URL carrying the absolute target. ``URI="..."`` attributes
    on tag lines (keys, alternate media, init maps) get the same treatment.
    Lines that cannot be resolved are kept as they are. The output has the
    same number of lines as the input.
    """
    base_url = manifest_base_url(manifest_url)

    def rewrite_attribute(match):
        try:
            return f'URI="{relay_url(relay_endpoint, _resolve(match.group(1), base_url))}"'
        except ValueError:
            return match.group(0)

    lines = []
    for line in manifest.split('\n'):
        stripped = line.strip()
        if stripped == '' or stripped.startswith('#'):
            if 'URI="' in stripped:
                line = _URI_ATTRIBUTE.sub(rewrite_attribute, line)
            lines.append(line)
            continue

        try:
            lines.append(relay_url(relay_endpoint, _resolve(stripped, base_url)))
        except ValueError:
            lines.append(line)

    return '\n'.join(lines)


class StreamRelay:
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=settings.DEFAULT_CONNECTION_TIMEOUT,
                read=settings.DEFAULT_READ_TIMEOUT,
                write=settings.DEFAULT_READ_TIMEOUT,
                pool=10.0
            ),
            follow_redirects=True,
            max_redirects=10,
            limits=httpx.Limits(
                max_keepalive_connections=20,
                max_connections=100,
                keepalive_expiry=30.0
            )
        )

    async def aclose(self):
        await self.http_client.aclose()

    async def relay(self, target_url: str, relay_endpoint: str) -> Response:
        """
        Fetch ``target_url`` and return it to the client.

        Manifests are read whole and rewritten; anything else is streamed
        through as it arrives. Network errors raised here happen before the
        response starts and are left to the caller to turn into a 500.
        """
        session = RelaySession(target_url=target_url)
        request = self.http_client.build_request(
            "GET", target_url, headers=build_upstream_headers(target_url))
        upstream = await self.http_client.send(request, stream=True)

        try:
            if upstream.status_code >= 400:
                logger.error(
                    f"Upstream error for {target_url}: {upstream.status_code} {upstream.reason_phrase}")
                await upstream.aclose()
                return Response(
                    content=f"Failed to fetch stream: {upstream.reason_phrase}",
                    status_code=upstream.status_code,
                    media_type="text/plain"
                )

            content_type = upstream.headers.get("content-type", "")
            session.is_manifest = is_manifest_response(content_type, target_url)

            if session.is_manifest:
                await upstream.aread()
                await upstream.aclose()
                manifest = upstream.text

                if manifest.strip().startswith(MANIFEST_MARKER):
                    # Resolve against the final URL so redirected manifests keep working
                    fetched_url = str(upstream.url)
                    session.rewritten_base_url = manifest_base_url(fetched_url)
                    logger.debug(
                        f"Rewriting manifest {target_url} against {session.rewritten_base_url}")
                    return Response(
                        content=rewrite_manifest(manifest, fetched_url, relay_endpoint),
                        media_type=HLS_CONTENT_TYPE,
                        headers={"Access-Control-Allow-Origin": "*"}
                    )

                return Response(
                    content=upstream.content,
                    headers={
                        "Content-Type": content_type or "text/plain",
                        "Access-Control-Allow-Origin": "*",
                    }
                )
        except BaseException:
            await upstream.aclose()
            raise

        return StreamingResponse(
            self._stream_body(upstream, target_url),
            headers={
                "Content-Type": content_type or "application/octet-stream",
                "Cache-Control": "no-cache",
                "Access-Control-Allow-Origin": "*",
            }
        )

    async def _stream_body(self, upstream: httpx.Response, target_url: str):
        bytes_served = 0
        try:
            async for chunk in upstream.aiter_bytes(chunk_size=settings.STREAM_CHUNK_SIZE):
                yield chunk
                bytes_served += len(chunk)
        except httpx.HTTPError as e:
            # Headers are already on the wire; all we can do is end the body
            logger.error(f"Relay of {target_url} failed after {bytes_served} bytes: {e}")
        finally:
            await upstream.aclose()
            logger.debug(f"Relayed {bytes_served} bytes from {target_url}")
