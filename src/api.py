from fastapi import FastAPI, APIRouter, Query, Request, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import subprocess
from typing import Optional

from cache_store import CacheStore
from config import settings, VERSION
from errors import ProxyError, NotFoundError, BadRequestError, UpstreamError
from metadata_proxy import MetadataProxy, parse_max_age_hours
from models import Source, SourceType, TranscodeMode
from process_supervisor import ProcessSupervisor
from sources import SourceRepository
from stream_relay import StreamRelay
from upstream import create_http_client

# Set up logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def get_ffmpeg_version() -> Optional[str]:
    """Get the ffmpeg version string"""
    try:
        result = subprocess.run(
            [settings.FFMPEG_PATH, '-version'],
            capture_output=True,
            text=True,
            timeout=5
        )
        if result.returncode == 0:
            # Extract the version from first line (e.g., "ffmpeg version 4.4.2")
            return result.stdout.split('\n')[0].strip()
        return None
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning(f"Failed to get ffmpeg version: {e}")
        return None


def relay_endpoint() -> str:
    """Path rewritten manifests point back at, as seen by the browser."""
    return f"{settings.ROOT_PATH}{settings.API_PREFIX}/proxy/stream"


# Global instances
source_repository = SourceRepository(settings.SOURCES_FILE)
cache_store = CacheStore(settings.CACHE_DIR)
http_client = create_http_client()
metadata_proxy = MetadataProxy(cache_store, http_client)
stream_relay = StreamRelay()
process_supervisor = ProcessSupervisor()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info(f"IPTV relay {VERSION} starting up (cache: {settings.CACHE_DIR})")

    yield

    logger.info("IPTV relay shutting down...")
    await process_supervisor.shutdown()
    await stream_relay.aclose()
    await http_client.aclose()


app = FastAPI(
    title="IPTV relay",
    version=VERSION,
    description="Metadata cache, HLS relay and FFmpeg remux/transcode endpoints for the browser player",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
)

# Configure CORS to allow all origins for streaming compatibility
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def verify_token(
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify API token if API_TOKEN is configured.
    Token can be provided via:
    - X-API-Token header (recommended)
    - api_token query parameter (for browser access or when headers are difficult)

    If API_TOKEN is not set in environment, authentication is disabled.
    """
    if not settings.API_TOKEN:
        return True

    provided_token = x_api_token or api_token

    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != settings.API_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


def get_source(source_id: str, *types: SourceType, label: str) -> Source:
    source = source_repository.get_by_id(source_id)
    if source is None or source.type not in types:
        raise NotFoundError(f"{label} not found")
    return source


router = APIRouter(prefix=settings.API_PREFIX)


@router.get("/health")
async def health():
    return {"status": "ok", "version": VERSION}


@router.get("/info", dependencies=[Depends(verify_token)])
async def get_info():
    """Server configuration and the FFmpeg sessions currently running."""
    sessions = process_supervisor.active_sessions()
    return {
        "version": VERSION,
        "ffmpeg_version": get_ffmpeg_version(),
        "active_sessions": len(sessions),
        "sessions": sessions,
        "configuration": {
            "api_prefix": settings.API_PREFIX,
            "cache_dir": settings.CACHE_DIR,
            "default_cache_max_age_hours": settings.DEFAULT_CACHE_MAX_AGE_HOURS,
            "transcode_audio_bitrate": settings.TRANSCODE_AUDIO_BITRATE,
            "cors_restricted_domains": settings.CORS_RESTRICTED_DOMAINS,
        }
    }


# ============================================================================
# METADATA
# ============================================================================

@router.get("/proxy/xtream/{source_id}/{action}")
async def proxy_xtream(
    source_id: str,
    action: str,
    category_id: Optional[str] = None,
    stream_id: Optional[str] = None,
    vod_id: Optional[str] = None,
    series_id: Optional[str] = None,
    limit: Optional[str] = None,
    refresh: Optional[str] = None,
    maxAge: Optional[str] = None
):
    source = get_source(source_id, SourceType.XTREAM, label="Xtream source")
    try:
        return await metadata_proxy.fetch_xtream(
            source,
            action,
            {
                "category_id": category_id,
                "stream_id": stream_id,
                "vod_id": vod_id,
                "series_id": series_id,
                "limit": limit,
            },
            force_refresh=refresh == "1",
            max_age_hours=parse_max_age_hours(maxAge)
        )
    except ProxyError:
        raise
    except Exception as e:
        logger.error(f"Xtream proxy error for source {source_id} ({action}): {e}")
        raise UpstreamError(str(e))


@router.get("/proxy/xtream/{source_id}/stream/{stream_id}")
@router.get("/proxy/xtream/{source_id}/stream/{stream_id}/{stream_type}")
async def xtream_stream_url(source_id: str, stream_id: str, stream_type: str = "live",
                            container: str = "m3u8"):
    source = get_source(source_id, SourceType.XTREAM, label="Xtream source")
    return {"url": metadata_proxy.xtream_stream_url(source, stream_id, stream_type, container)}


@router.get("/proxy/m3u/{source_id}")
async def proxy_m3u(source_id: str, refresh: Optional[str] = None, maxAge: Optional[str] = None):
    source = get_source(source_id, SourceType.M3U, label="M3U source")
    try:
        return await metadata_proxy.fetch_m3u(
            source, force_refresh=refresh == "1", max_age_hours=parse_max_age_hours(maxAge))
    except ProxyError:
        raise
    except Exception as e:
        logger.error(f"M3U proxy error for source {source_id}: {e}")
        raise UpstreamError(str(e))


@router.get("/proxy/epg/{source_id}")
async def proxy_epg(source_id: str, refresh: Optional[str] = None, maxAge: Optional[str] = None):
    source = get_source(source_id, SourceType.EPG, SourceType.XTREAM, label="Valid EPG source")
    try:
        return await metadata_proxy.fetch_epg(
            source, force_refresh=refresh == "1", max_age_hours=parse_max_age_hours(maxAge))
    except ProxyError:
        raise
    except Exception as e:
        logger.error(f"EPG proxy error for source {source_id}: {e}")
        raise UpstreamError(str(e))


@router.post("/proxy/epg/{source_id}/channels")
async def epg_for_channels(source_id: str, request: Request):
    source = get_source(source_id, SourceType.EPG, label="EPG source")
    try:
        body = await request.json()
    except ValueError:
        body = None
    channel_ids = body.get("channelIds") if isinstance(body, dict) else None
    if not isinstance(channel_ids, list):
        raise BadRequestError("channelIds array required")

    try:
        return await metadata_proxy.epg_for_channels(source, channel_ids)
    except ProxyError:
        raise
    except Exception as e:
        logger.error(f"EPG channel lookup failed for source {source_id}: {e}")
        raise UpstreamError(str(e))


@router.delete("/proxy/cache/{source_id}", dependencies=[Depends(verify_token)])
async def clear_source_cache(source_id: str):
    metadata_proxy.clear_source(source_id)
    return {"success": True, "message": f"Cache cleared for source {source_id}"}


@router.delete("/proxy/epg/{source_id}/cache", dependencies=[Depends(verify_token)])
async def clear_epg_cache(source_id: str):
    metadata_proxy.clear_epg(source_id)
    return {"success": True, "message": f"EPG cache cleared for source {source_id}"}


@router.get("/proxy/cache/{source_id}/{namespace}/{key}", dependencies=[Depends(verify_token)])
async def cache_entry_info(source_id: str, namespace: str, key: str):
    info = cache_store.info(namespace, source_id, key)
    if info is None:
        raise NotFoundError("Cache entry not found")
    return {"timestamp": info.timestamp, "age": info.age, "size": info.size}


# ============================================================================
# STREAMS
# ============================================================================

@router.get("/proxy/stream")
async def proxy_stream(url: Optional[str] = None):
    """
    Relay a manifest, segment or key. Manifests come back rewritten so
    every URI they reference also goes through this endpoint.
    """
    if not url:
        raise BadRequestError("URL required")
    try:
        return await stream_relay.relay(url, relay_endpoint())
    except ProxyError:
        raise
    except Exception as e:
        logger.error(f"Stream proxy error for {url}: {e}")
        raise UpstreamError(str(e) or e.__class__.__name__)


@router.get("/remux")
async def remux_stream(url: Optional[str] = None):
    """Container remux (MPEG-TS to fragmented MP4) without re-encoding."""
    if not url:
        raise BadRequestError("URL required")
    return await process_supervisor.serve(url, TranscodeMode.REMUX)


@router.get("/transcode")
async def transcode_stream(url: Optional[str] = None):
    """Video copy with audio re-encoded to stereo AAC."""
    if not url:
        raise BadRequestError("URL required")
    return await process_supervisor.serve(url, TranscodeMode.TRANSCODE)


app.include_router(router)
