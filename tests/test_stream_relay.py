import os
import sys
from urllib.parse import quote

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import httpx
import pytest
import pytest_asyncio
from fastapi.responses import StreamingResponse

from stream_relay import (
    StreamRelay,
    build_upstream_headers,
    is_manifest_response,
    manifest_base_url,
    relay_url,
    rewrite_manifest,
)

ENDPOINT = "/api/proxy/stream"


def relayed(url):
    return f"{ENDPOINT}?url={quote(url, safe='')}"


class TestManifestRewriting:

    def test_relative_segment_resolved_against_manifest_directory(self):
        manifest = "#EXTM3U\n#EXTINF:6.0,\nseg/low/1.ts\n"
        result = rewrite_manifest(manifest, "http://cdn.test/live/master.m3u8", ENDPOINT)
        assert relayed("http://cdn.test/live/seg/low/1.ts") in result.split("\n")

    def test_line_count_preserved(self):
        manifest = "\n".join([
            "#EXTM3U",
            "#EXT-X-VERSION:3",
            "",
            "#EXT-X-STREAM-INF:BANDWIDTH=800000",
            "low/index.m3u8",
            "#EXT-X-STREAM-INF:BANDWIDTH=2000000",
            "https://other.test/high/index.m3u8",
            "",
        ])
        result = rewrite_manifest(manifest, "http://cdn.test/live/master.m3u8", ENDPOINT)
        assert len(result.split("\n")) == len(manifest.split("\n"))

    def test_rewriting_twice_keeps_structure(self):
        manifest = (
            '#EXTM3U\n'
            '#EXT-X-KEY:METHOD=AES-128,URI="k.bin"\n'
            '#EXTINF:6.0,\n'
            'seg/1.ts\n'
        )
        once = rewrite_manifest(manifest, "https://cdn.example.com/stream/index.m3u8", ENDPOINT)
        twice = rewrite_manifest(once, "https://relay.test/api/proxy/index.m3u8", ENDPOINT)
        once_lines, twice_lines = once.split("\n"), twice.split("\n")
        assert len(twice_lines) == len(once_lines)
        assert [l.startswith("#") for l in twice_lines] == [l.startswith("#") for l in once_lines]
        assert twice_lines[2] == "#EXTINF:6.0,"

    def test_tags_and_blank_lines_untouched(self):
        manifest = "#EXTM3U\n#EXT-X-TARGETDURATION:6\n\n#EXTINF:6.0,\n1.ts"
        lines = rewrite_manifest(manifest, "http://cdn.test/a/b.m3u8", ENDPOINT).split("\n")
        assert lines[:4] == ["#EXTM3U", "#EXT-X-TARGETDURATION:6", "", "#EXTINF:6.0,"]
        assert lines[4] == relayed("http://cdn.test/a/1.ts")

    def test_absolute_urls_relayed_unchanged(self):
        manifest = "#EXTM3U\nhttps://segments.test/x/2.ts?token=abc"
        lines = rewrite_manifest(manifest, "http://cdn.test/live/index.m3u8", ENDPOINT).split("\n")
        assert lines[1] == relayed("https://segments.test/x/2.ts?token=abc")

    def test_root_relative_path(self):
        manifest = "#EXTM3U\n/hls/3.ts"
        lines = rewrite_manifest(manifest, "http://cdn.test/live/index.m3u8", ENDPOINT).split("\n")
        assert lines[1] == relayed("http://cdn.test/hls/3.ts")

    def test_uri_attributes_rewritten(self):
        manifest = (
            '#EXTM3U\n'
            '#EXT-X-KEY:METHOD=AES-128,URI="keys/k1.bin",IV=0x1\n'
            '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",URI="audio/en.m3u8"\n'
            '#EXTINF:6.0,\n'
            '1.ts'
        )
        lines = rewrite_manifest(manifest, "http://cdn.test/live/index.m3u8", ENDPOINT).split("\n")
        assert lines[1] == (
            f'#EXT-X-KEY:METHOD=AES-128,URI="{relayed("http://cdn.test/live/keys/k1.bin")}",IV=0x1')
        assert f'URI="{relayed("http://cdn.test/live/audio/en.m3u8")}"' in lines[2]
        assert 'GROUP-ID="aud"' in lines[2]

    def test_unresolvable_line_passes_through(self):
        manifest = "#EXTM3U\nsegment.ts"
        # Without a usable base the reference cannot become absolute
        lines = rewrite_manifest(manifest, "not-a-url", ENDPOINT).split("\n")
        assert lines[1] == "segment.ts"


class TestHelpers:

    def test_manifest_base_url(self):
        assert manifest_base_url("http://cdn.test/a/b/index.m3u8?x=1") == "http://cdn.test/a/b/"
        assert manifest_base_url("http://cdn.test") == "http://cdn.test/"

    def test_relay_url_encodes_everything(self):
        assert relay_url(ENDPOINT, "http://a.test/x?y=1&z=2") == \
            "/api/proxy/stream?url=http%3A%2F%2Fa.test%2Fx%3Fy%3D1%26z%3D2"

    def test_is_manifest_response(self):
        assert is_manifest_response("application/vnd.apple.mpegurl", "http://a.test/x")
        assert is_manifest_response("audio/x-mpegURL", "http://a.test/x")
        assert is_manifest_response("text/plain", "http://a.test/index.m3u8?token=1")
        assert not is_manifest_response("video/mp2t", "http://a.test/1.ts")

    def test_default_headers_use_target_origin(self):
        headers = build_upstream_headers("http://cdn.test:8080/live/index.m3u8", origin_overrides={})
        assert headers["Origin"] == "http://cdn.test:8080"
        assert headers["Referer"] == "http://cdn.test:8080/"
        assert "Mozilla" in headers["User-Agent"]

    def test_origin_override_for_subdomain(self):
        headers = build_upstream_headers(
            "https://service-stitcher.clusters.pluto.tv/v1/master.m3u8",
            origin_overrides={"pluto.tv": "https://pluto.tv"})
        assert headers["Origin"] == "https://pluto.tv"
        assert headers["Referer"] == "https://pluto.tv/"

    def test_origin_override_does_not_match_lookalike(self):
        headers = build_upstream_headers(
            "https://notpluto.tv/master.m3u8", origin_overrides={"pluto.tv": "https://pluto.tv"})
        assert headers["Origin"] == "https://notpluto.tv"


class Upstream:
    def __init__(self):
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/start.m3u8":
            return httpx.Response(302, headers={"Location": "http://edge.test/live/index.m3u8"})
        if path == "/live/index.m3u8":
            return httpx.Response(
                200,
                headers={"Content-Type": "application/vnd.apple.mpegurl"},
                text="#EXTM3U\n#EXTINF:6.0,\n1.ts\n"
            )
        if path == "/not-hls.m3u8":
            return httpx.Response(200, headers={"Content-Type": "text/plain"}, text="<html>blocked</html>")
        if path == "/live/1.ts":
            return httpx.Response(200, headers={"Content-Type": "video/mp2t"}, content=b"\x47" * 1000)
        return httpx.Response(404)


@pytest_asyncio.fixture
async def relay():
    upstream = Upstream()
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream), follow_redirects=True)
    relay = StreamRelay(http_client=client)
    relay.upstream = upstream
    yield relay
    await relay.aclose()


class TestStreamRelay:

    @pytest.mark.asyncio
    async def test_manifest_rewritten_against_final_url(self, relay):
        response = await relay.relay("http://origin.test/start.m3u8", ENDPOINT)
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/vnd.apple.mpegurl"
        assert response.headers["access-control-allow-origin"] == "*"
        body = response.body.decode()
        assert relayed("http://edge.test/live/1.ts") in body

    @pytest.mark.asyncio
    async def test_upstream_headers_sent(self, relay):
        await relay.relay("http://edge.test/live/index.m3u8", ENDPOINT)
        request = relay.upstream.requests[0]
        assert request.headers["origin"] == "http://edge.test"
        assert request.headers["referer"] == "http://edge.test/"

    @pytest.mark.asyncio
    async def test_manifest_without_marker_forwarded(self, relay):
        response = await relay.relay("http://edge.test/not-hls.m3u8", ENDPOINT)
        assert response.body == b"<html>blocked</html>"
        assert response.headers["content-type"].startswith("text/plain")

    @pytest.mark.asyncio
    async def test_segment_streamed(self, relay):
        response = await relay.relay("http://edge.test/live/1.ts", ENDPOINT)
        assert isinstance(response, StreamingResponse)
        assert response.headers["content-type"] == "video/mp2t"
        body = b""
        async for chunk in response.body_iterator:
            body += chunk
        assert body == b"\x47" * 1000

    @pytest.mark.asyncio
    async def test_upstream_error_status_forwarded(self, relay):
        response = await relay.relay("http://edge.test/missing.ts", ENDPOINT)
        assert response.status_code == 404
        assert response.body == b"Failed to fetch stream: Not Found"

    @pytest.mark.asyncio
    async def test_network_error_raised(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        relay = StreamRelay(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(httpx.ConnectError):
            await relay.relay("http://down.test/index.m3u8", ENDPOINT)
        await relay.aclose()
