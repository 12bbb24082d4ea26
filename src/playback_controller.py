"""
Playback controller: picks a delivery strategy for a channel and keeps it
playing.

Strategies escalate one way only::

    direct -> proxied (through /proxy/stream)
    raw MPEG-TS -> remuxed (/remux) or transcoded (/transcode)

Engine events are classified by ``handle_engine_event``, a pure function
from (state, event) to (new state, actions). ``PlaybackController`` owns
the engine instance, the media element and the timers, and carries out the
actions. The media element, engine, channel list and view are collaborators
supplied by the host (a browser bridge in production, fakes in tests).
"""

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple
from urllib.parse import quote, urlparse

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

HLS_MIME_TYPE = "application/vnd.apple.mpegurl"

MAX_NETWORK_RETRIES = 3
NETWORK_RETRY_STEP = 1.0          # seconds added per attempt
NETWORK_ERROR_RESET_WINDOW = 30.0  # a later error starts a new episode
MEDIA_RECOVERY_COOLDOWN = 2.0
MEDIA_ERROR_WINDOW = 5.0
MEDIA_ERRORS_BEFORE_CODEC_SWAP = 3
CORRUPT_SEGMENT_SEEK_DELAY = 0.2
CORRUPT_SEGMENT_SEEK = 1.0
DISCONTINUITY_NUDGE = 0.01
VOLUME_STEP = 0.1

FRAG_PARSING_ERROR = "fragParsingError"
BUFFER_APPEND_ERROR = "bufferAppendError"
INIT_SEGMENT = "initSegment"

RAW_TS_MESSAGE = (
    "This stream uses raw MPEG-TS format (.ts) which browsers cannot play directly. "
    "To fix this: enable \"Force Remux\" in Settings > Streaming, "
    "or configure your source to output HLS (.m3u8) format."
)

# Buffer tuning handed to every engine instance
ENGINE_CONFIG: Dict[str, Any] = {
    "enableWorker": True,
    "maxBufferLength": 30,
    "maxMaxBufferLength": 60,
    "maxBufferSize": 60 * 1000 * 1000,
    "maxBufferHole": 1.0,
    "liveSyncDurationCount": 3,
    "liveMaxLatencyDurationCount": 10,
    "liveBackBufferLength": 30,
    "stretchShortVideoTrack": True,
    "forceKeyFrameOnDiscontinuity": True,
    "maxAudioFramesDrift": 8,
    "progressive": False,
    "nudgeOffset": 0.2,
    "nudgeMaxRetry": 6,
    "levelLoadingMaxRetry": 4,
    "manifestLoadingMaxRetry": 4,
    "fragLoadingMaxRetry": 6,
    "lowLatencyMode": False,
    "enableCEA708Captions": True,
    "enableWebVTT": True,
    "renderTextTracksNatively": True,
}


class DeliveryStrategy(str, Enum):
    DIRECT = "direct"
    PROXIED = "proxied"
    REMUXED = "remuxed"
    TRANSCODED = "transcoded"


class PlaybackFailure(str, Enum):
    RETRYABLE_NETWORK = "retryable_network"
    RECOVERABLE_MEDIA = "recoverable_media"
    TERMINAL_FORMAT = "terminal_format"
    TERMINAL_ENGINE = "terminal_engine"


class ErrorType(str, Enum):
    NETWORK = "networkError"
    MEDIA = "mediaError"
    MUX = "muxError"
    OTHER = "otherError"


class EngineEventType(str, Enum):
    ERROR = "error"
    FRAG_CHANGED = "fragChanged"
    MANIFEST_PARSED = "manifestParsed"
    BUFFER_STALLED = "bufferStalled"
    AUDIO_TRACK_SWITCHED = "audioTrackSwitched"


@dataclass(frozen=True)
class EngineEvent:
    type: EngineEventType
    error_type: Optional[ErrorType] = None
    details: Optional[str] = None
    fatal: bool = False
    frag_sn: Any = None
    frag_cc: Optional[int] = None

    @classmethod
    def error(cls, error_type: ErrorType, details: str = "", fatal: bool = False) -> "EngineEvent":
        return cls(EngineEventType.ERROR, error_type=error_type, details=details, fatal=fatal)

    @classmethod
    def frag_changed(cls, sn: Any, cc: Optional[int]) -> "EngineEvent":
        return cls(EngineEventType.FRAG_CHANGED, frag_sn=sn, frag_cc=cc)


@dataclass(frozen=True)
class Channel:
    id: str
    name: str = ""
    tvg_id: Optional[str] = None
    source_id: Optional[str] = None
    source_type: Optional[str] = None
    stream_id: Optional[str] = None


@dataclass(frozen=True)
class PlaybackState:
    current_channel: Optional[Channel] = None
    current_url: Optional[str] = None
    strategy: DeliveryStrategy = DeliveryStrategy.DIRECT
    is_using_proxy: bool = False
    network_retry_count: int = 0
    last_network_error_time: Optional[float] = None
    media_error_count: int = 0
    last_recovery_attempt: Optional[float] = None
    last_continuity_counter: int = -1
    error: Optional[str] = None


@dataclass(frozen=True)
class MediaSnapshot:
    """The bits of media element state the transition function reads."""
    paused: bool = True
    current_time: float = 0.0

    @property
    def is_playing(self) -> bool:
        return not self.paused and self.current_time > 0


class ActionType(str, Enum):
    START_LOAD = "start_load"
    SCHEDULE_START_LOAD = "schedule_start_load"
    SWITCH_TO_PROXY = "switch_to_proxy"
    RECOVER_MEDIA = "recover_media"
    SWAP_AUDIO_CODEC = "swap_audio_codec"
    SEEK_FORWARD = "seek_forward"
    NUDGE = "nudge"
    PLAY = "play"
    STOP = "stop"


@dataclass(frozen=True)
class Action:
    type: ActionType
    delay: float = 0.0
    amount: float = 0.0


class PlayerSettings(BaseModel):
    """Player preferences, exchanged with the settings store in camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    arrow_keys_change_channel: bool = True
    overlay_duration: float = 5
    default_volume: int = 80
    remember_volume: bool = True
    last_volume: int = 80
    force_proxy: bool = False
    force_transcode: bool = False
    force_remux: bool = False


# ============================================================================
# URL CLASSIFICATION
# ============================================================================

def looks_like_hls(url: str) -> bool:
    return "m3u8" in url


def is_raw_ts(url: str) -> bool:
    return ".ts" in url and ".m3u8" not in url


def is_extensionless(url: str) -> bool:
    return not any(ext in url for ext in (".m3u8", ".mp4", ".mkv", ".avi", ".ts"))


def is_cors_restricted(url: str, domains: List[str]) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(host == d or host.endswith(f".{d}") for d in domains)


def relay_endpoint_url(api_prefix: str, path: str, url: str) -> str:
    return f"{api_prefix}{path}?url={quote(url, safe='')}"


def classify_error(event: EngineEvent) -> Optional[PlaybackFailure]:
    if event.type != EngineEventType.ERROR:
        return None
    if event.error_type == ErrorType.NETWORK and event.fatal:
        return PlaybackFailure.RETRYABLE_NETWORK
    if event.error_type == ErrorType.MEDIA or event.details == BUFFER_APPEND_ERROR:
        return PlaybackFailure.RECOVERABLE_MEDIA
    if event.fatal:
        return PlaybackFailure.TERMINAL_ENGINE
    return None


# ============================================================================
# TRANSITIONS
# ============================================================================

def _on_network_error(state: PlaybackState, now: float) -> Tuple[PlaybackState, List[Action]]:
    count = state.network_retry_count + 1
    if state.last_network_error_time is None or now - state.last_network_error_time > NETWORK_ERROR_RESET_WINDOW:
        count = 1
    state = replace(state, network_retry_count=count, last_network_error_time=now)

    if state.is_using_proxy:
        logger.info("Network error on proxy, restarting load")
        return state, [Action(ActionType.START_LOAD)]

    if count < MAX_NETWORK_RETRIES:
        delay = count * NETWORK_RETRY_STEP
        logger.info(f"Network error (attempt {count}/{MAX_NETWORK_RETRIES}), retrying in {delay:.0f}s")
        return state, [Action(ActionType.SCHEDULE_START_LOAD, delay=delay)]

    logger.info("Max network retries reached, switching to proxy")
    state = replace(state, strategy=DeliveryStrategy.PROXIED, is_using_proxy=True, network_retry_count=0)
    return state, [Action(ActionType.SWITCH_TO_PROXY)]


def _on_nonfatal_media_error(state: PlaybackState, event: EngineEvent, now: float,
                             media: MediaSnapshot) -> Tuple[PlaybackState, List[Action]]:
    since_recovery = float("inf") if state.last_recovery_attempt is None else now - state.last_recovery_attempt
    count = state.media_error_count + 1 if since_recovery < MEDIA_ERROR_WINDOW else 1

    if since_recovery < MEDIA_RECOVERY_COOLDOWN:
        logger.debug(f"Non-fatal media error (cooldown): {event.details}")
        return replace(state, media_error_count=count), []

    logger.info(f"Non-fatal media error ({count}x): {event.details} - attempting recovery")
    actions = []
    if count >= MEDIA_ERRORS_BEFORE_CODEC_SWAP:
        logger.info("Repeated media errors, swapping audio codec")
        actions.append(Action(ActionType.SWAP_AUDIO_CODEC))
        count = 0
    actions.append(Action(ActionType.RECOVER_MEDIA))

    if event.details == FRAG_PARSING_ERROR and media.is_playing:
        actions.append(Action(ActionType.SEEK_FORWARD, delay=CORRUPT_SEGMENT_SEEK_DELAY,
                              amount=CORRUPT_SEGMENT_SEEK))

    return replace(state, media_error_count=count, last_recovery_attempt=now), actions


def handle_engine_event(
    state: PlaybackState,
    event: EngineEvent,
    now: float,
    media: MediaSnapshot = MediaSnapshot(),
    nudge_on_discontinuity: bool = False
) -> Tuple[PlaybackState, List[Action]]:
    """Decide how to react to one engine event. Never touches the engine itself."""
    if event.type == EngineEventType.MANIFEST_PARSED:
        return state, [Action(ActionType.PLAY)]

    if event.type == EngineEventType.BUFFER_STALLED:
        logger.info("Buffer stalled, attempting recovery")
        return state, [Action(ActionType.RECOVER_MEDIA)]

    if event.type == EngineEventType.AUDIO_TRACK_SWITCHED:
        logger.debug("Audio track switched")
        return state, []

    if event.type == EngineEventType.FRAG_CHANGED:
        if event.frag_sn == INIT_SEGMENT or event.frag_cc is None:
            return state, []
        if event.frag_cc == state.last_continuity_counter:
            return state, []
        logger.info(f"Discontinuity detected: CC {state.last_continuity_counter} -> {event.frag_cc}")
        state = replace(state, last_continuity_counter=event.frag_cc)
        if nudge_on_discontinuity and media.is_playing:
            return state, [Action(ActionType.NUDGE, amount=DISCONTINUITY_NUDGE)]
        return state, []

    # Errors
    if event.fatal:
        if event.error_type == ErrorType.NETWORK:
            return _on_network_error(state, now)
        if event.error_type == ErrorType.MEDIA:
            logger.info(f"Fatal media error ({event.details}), attempting recovery")
            return state, [Action(ActionType.RECOVER_MEDIA)]
        logger.error(f"Fatal playback error: {event.error_type} {event.details}")
        return replace(state, error=f"Playback failed: {event.details or event.error_type}"), [Action(ActionType.STOP)]

    if event.error_type == ErrorType.MEDIA:
        return _on_nonfatal_media_error(state, event, now, media)

    if event.details == BUFFER_APPEND_ERROR:
        logger.info("Buffer append error, recovering")
        return state, [Action(ActionType.RECOVER_MEDIA)]

    return state, []


# ============================================================================
# COLLABORATORS
# ============================================================================

class PlaybackRejected(Exception):
    """The media element refused to start (autoplay policy, CORS, bad source)."""


class MediaElement(Protocol):
    src: str
    paused: bool
    current_time: float
    volume: float
    muted: bool

    async def play(self) -> None: ...
    def pause(self) -> None: ...
    def load(self) -> None: ...
    def can_play_type(self, mime_type: str) -> str: ...


class StreamingEngine(Protocol):
    def load_source(self, url: str) -> None: ...
    def attach_media(self, media: MediaElement) -> None: ...
    def start_load(self) -> None: ...
    def recover_media_error(self) -> None: ...
    def swap_audio_codec(self) -> None: ...
    def destroy(self) -> None: ...


# (config, emit) -> engine. The engine reports events through ``emit``.
EngineFactory = Callable[[Dict[str, Any], Callable[[EngineEvent], None]], StreamingEngine]


class ChannelList(Protocol):
    def get_visible_channels(self) -> List[Channel]: ...
    def select_channel(self, channel: Channel) -> None: ...


class PlayerView(Protocol):
    def show_error(self, message: str) -> None: ...
    def set_overlay_visible(self, visible: bool) -> None: ...
    def update_now_playing(self, channel: Channel, epg: Optional[dict] = None) -> None: ...
    def toggle_fullscreen(self) -> None: ...
    def channel_changed(self, channel: Channel) -> None: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


# ============================================================================
# EPG (NOW PLAYING)
# ============================================================================

def decode_base64(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        return base64.b64decode(value, validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return value


def now_playing_from_short_epg(epg_data: Optional[dict], now: Optional[float] = None,
                               limit: int = 5) -> Optional[dict]:
    """Turn an Xtream ``get_short_epg`` payload into ``{current, upcoming}``."""
    listings = (epg_data or {}).get("epg_listings") or []
    now = int(now if now is not None else time.time())

    def to_programme(item):
        return {
            "title": decode_base64(item.get("title")),
            "start": int(item["start_timestamp"]),
            "stop": int(item["stop_timestamp"]),
            "description": decode_base64(item.get("description")),
        }

    current = None
    upcoming = []
    for item in listings:
        try:
            start, stop = int(item["start_timestamp"]), int(item["stop_timestamp"])
        except (KeyError, TypeError, ValueError):
            continue
        if start <= now < stop and current is None:
            current = to_programme(item)
        elif start > now:
            upcoming.append(to_programme(item))

    if current is None:
        return None
    return {"current": current, "upcoming": upcoming[:limit]}


# ============================================================================
# CONTROLLER
# ============================================================================

class PlaybackController:
    def __init__(
        self,
        media: MediaElement,
        view: PlayerView,
        channel_list: ChannelList,
        engine_factory: Optional[EngineFactory] = None,
        settings: Optional[PlayerSettings] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.monotonic,
        api_prefix: str = "/api",
        cors_restricted_domains: Optional[List[str]] = None,
        save_settings: Optional[Callable[[PlayerSettings], Awaitable[None]]] = None,
        epg_lookup: Optional[Callable[[Channel], Awaitable[Optional[dict]]]] = None,
        short_epg: Optional[Callable[[str, str], Awaitable[Optional[dict]]]] = None,
    ):
        self.media = media
        self.view = view
        self.channel_list = channel_list
        self.engine_factory = engine_factory
        self.settings = settings or PlayerSettings()
        self.scheduler = scheduler or AsyncioScheduler()
        self.clock = clock
        self.api_prefix = api_prefix
        self.cors_restricted_domains = cors_restricted_domains if cors_restricted_domains is not None else ["pluto.tv"]
        self.save_settings = save_settings
        self.epg_lookup = epg_lookup
        self.short_epg = short_epg

        self.state = PlaybackState()
        self.engine: Optional[StreamingEngine] = None
        self.overlay_visible = False
        self._generation = 0
        self._nudge_on_discontinuity = False
        self._timers: Dict[str, TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def engine_supported(self) -> bool:
        return self.engine_factory is not None

    # -- urls ---------------------------------------------------------------

    def proxied_url(self, url: str) -> str:
        return relay_endpoint_url(self.api_prefix, "/proxy/stream", url)

    def remux_url(self, url: str) -> str:
        return relay_endpoint_url(self.api_prefix, "/remux", url)

    def transcode_url(self, url: str) -> str:
        return relay_endpoint_url(self.api_prefix, "/transcode", url)

    # -- timers -------------------------------------------------------------

    def _set_timer(self, name: str, delay: float, callback: Callable[[], None]):
        self._cancel_timer(name)

        def fire():
            self._timers.pop(name, None)
            callback()

        self._timers[name] = self.scheduler.call_later(delay, fire)

    def _cancel_timer(self, name: str):
        handle = self._timers.pop(name, None)
        if handle:
            handle.cancel()

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- engine lifecycle ---------------------------------------------------

    def _create_engine(self, nudge_on_discontinuity: bool) -> StreamingEngine:
        self._generation += 1
        generation = self._generation
        self._nudge_on_discontinuity = nudge_on_discontinuity
        self.engine = self.engine_factory(
            dict(ENGINE_CONFIG), lambda event: self.dispatch(event, generation))
        return self.engine

    def initialize(self):
        """Apply the starting volume and create the standby engine."""
        volume = self.settings.last_volume if self.settings.remember_volume else self.settings.default_volume
        self.media.volume = max(0.0, min(1.0, volume / 100))
        if self.engine_supported:
            # Standby engine: the only path that nudges across discontinuities
            self._create_engine(nudge_on_discontinuity=True)

    def stop(self):
        """Tear down the engine and any pending retry or seek timers."""
        for name in ("retry", "seek"):
            self._cancel_timer(name)
        if self.engine is not None:
            self.engine.destroy()
            self.engine = None
        # Events still queued from the old engine must not reach the new one
        self._generation += 1
        self.media.pause()
        self.media.src = ""
        self.media.load()

    def reset(self, channel: Optional[Channel] = None, url: Optional[str] = None):
        self.stop()
        self.state = PlaybackState(current_channel=channel, current_url=url)

    # -- playback -----------------------------------------------------------

    async def play(self, channel: Channel, stream_url: str):
        self.reset(channel, stream_url)
        try:
            await self._start(channel, stream_url)
        except Exception as e:
            logger.error(f"Error playing channel {channel.id}: {e}")
            self._fail("Failed to play channel")

    async def _start(self, channel: Channel, stream_url: str):
        if self.settings.force_transcode:
            logger.info("Force Transcode enabled, routing through FFmpeg")
            await self._play_remediated(channel, DeliveryStrategy.TRANSCODED, self.transcode_url(stream_url))
            return

        raw_ts = is_raw_ts(stream_url)
        if self.settings.force_remux and (raw_ts or is_extensionless(stream_url)):
            logger.info(f"Force Remux enabled ({'raw TS' if raw_ts else 'extension-less, assumed TS'})")
            await self._play_remediated(channel, DeliveryStrategy.REMUXED, self.remux_url(stream_url))
            return

        if raw_ts:
            logger.warning("Raw MPEG-TS stream detected and no remux/transcode mode enabled")
            self._fail(RAW_TS_MESSAGE)
            return

        needs_proxy = self.settings.force_proxy or is_cors_restricted(stream_url, self.cors_restricted_domains)
        self.state = replace(
            self.state,
            strategy=DeliveryStrategy.PROXIED if needs_proxy else DeliveryStrategy.DIRECT,
            is_using_proxy=needs_proxy
        )
        final_url = self.proxied_url(stream_url) if needs_proxy else stream_url

        if looks_like_hls(final_url) and self.engine_supported:
            engine = self._create_engine(nudge_on_discontinuity=False)
            engine.load_source(final_url)
            engine.attach_media(self.media)
        elif self.media.can_play_type(HLS_MIME_TYPE) in ("probably", "maybe"):
            self.media.src = final_url
            try:
                await self.media.play()
            except PlaybackRejected as e:
                logger.info(f"Native playback rejected ({e}), trying proxy")
                if not self.state.is_using_proxy:
                    self.state = replace(self.state, strategy=DeliveryStrategy.PROXIED, is_using_proxy=True)
                    self.media.src = self.proxied_url(stream_url)
                    await self._autoplay()
        else:
            self.media.src = final_url
            await self._autoplay()

        self._announce(channel)

    async def _play_remediated(self, channel: Channel, strategy: DeliveryStrategy, url: str):
        # Remux and transcode output is fragmented MP4: the media element plays it directly
        self.state = replace(self.state, strategy=strategy, current_url=url)
        self.media.src = url
        await self._autoplay()
        self._announce(channel)

    async def _autoplay(self):
        try:
            await self.media.play()
        except PlaybackRejected as e:
            logger.info(f"Autoplay prevented: {e}")

    def _announce(self, channel: Channel):
        self.view.update_now_playing(channel)
        self.show_overlay()
        if self.epg_lookup or self.short_epg:
            self._spawn(self.fetch_epg_data(channel))
        self.view.channel_changed(channel)

    def _fail(self, message: str):
        self.state = replace(self.state, error=message)
        self.view.show_error(message)

    # -- engine events ------------------------------------------------------

    def dispatch(self, event: EngineEvent, generation: Optional[int] = None):
        """Entry point for engine callbacks."""
        if generation is not None and generation != self._generation:
            logger.debug(f"Ignoring {event.type.value} from a destroyed engine")
            return
        if event.type == EngineEventType.ERROR:
            logger.warning(f"Engine error: {event.error_type} {event.details} (fatal={event.fatal})")

        snapshot = MediaSnapshot(paused=self.media.paused, current_time=self.media.current_time)
        self.state, actions = handle_engine_event(
            self.state, event, self.clock(), snapshot, self._nudge_on_discontinuity)
        for action in actions:
            self._apply(action)

    def _apply(self, action: Action):
        engine = self.engine
        if action.type == ActionType.PLAY:
            self._spawn(self._autoplay())
        elif action.type == ActionType.NUDGE:
            self.media.current_time += action.amount
        elif action.type == ActionType.SEEK_FORWARD:
            self._set_timer("seek", action.delay, lambda: self._seek_forward(action.amount))
        elif action.type == ActionType.STOP:
            self.stop()
            self.view.show_error(self.state.error or "Playback failed")
        elif engine is None:
            return
        elif action.type == ActionType.START_LOAD:
            engine.start_load()
        elif action.type == ActionType.SCHEDULE_START_LOAD:
            self._set_timer("retry", action.delay, self._retry_load)
        elif action.type == ActionType.SWITCH_TO_PROXY:
            engine.load_source(self.proxied_url(self.state.current_url))
            engine.start_load()
        elif action.type == ActionType.SWAP_AUDIO_CODEC:
            engine.swap_audio_codec()
        elif action.type == ActionType.RECOVER_MEDIA:
            engine.recover_media_error()

    def _retry_load(self):
        if self.engine is not None:
            self.engine.start_load()

    def _seek_forward(self, amount: float):
        if not self.media.paused:
            logger.info("Seeking past corrupted segment")
            self.media.current_time += amount

    # -- now playing --------------------------------------------------------

    async def fetch_epg_data(self, channel: Channel):
        try:
            if self.epg_lookup:
                guide = await self.epg_lookup(channel)
                if guide and guide.get("current"):
                    self.view.update_now_playing(channel, guide)
                    return

            if self.short_epg and channel.source_type == "xtream" and channel.stream_id:
                data = await self.short_epg(channel.source_id, channel.stream_id)
                now_playing = now_playing_from_short_epg(data)
                if now_playing:
                    self.view.update_now_playing(channel, now_playing)
        except Exception as e:
            logger.info(f"EPG data not available for {channel.id}: {e}")

    # -- overlay ------------------------------------------------------------

    def show_overlay(self):
        if self.state.current_channel is None:
            return
        self.overlay_visible = True
        self.view.set_overlay_visible(True)
        self._set_timer("overlay", self.settings.overlay_duration, self.hide_overlay)

    def hide_overlay(self):
        self._cancel_timer("overlay")
        self.overlay_visible = False
        self.view.set_overlay_visible(False)

    # -- navigation ---------------------------------------------------------

    def _current_index(self, channels: List[Channel]) -> int:
        current = self.state.current_channel
        if current is None:
            return -1
        for i, channel in enumerate(channels):
            if channel.id == current.id:
                return i
        return -1

    def channel_up(self) -> Optional[Channel]:
        """Select the previous visible channel, wrapping to the end."""
        channels = self.channel_list.get_visible_channels()
        if not channels:
            return None
        idx = self._current_index(channels)
        target = channels[len(channels) - 1 if idx <= 0 else idx - 1]
        self.channel_list.select_channel(target)
        return target

    def channel_down(self) -> Optional[Channel]:
        """Select the next visible channel, wrapping to the start."""
        channels = self.channel_list.get_visible_channels()
        if not channels:
            return None
        idx = self._current_index(channels)
        target = channels[0 if idx >= len(channels) - 1 else idx + 1]
        self.channel_list.select_channel(target)
        return target

    # -- volume & keyboard --------------------------------------------------

    def set_volume(self, volume: float):
        volume = round(max(0.0, min(1.0, volume)), 2)
        self.media.volume = volume
        if self.settings.remember_volume:
            self.settings.last_volume = round(volume * 100)
            if self.save_settings:
                self._spawn(self.save_settings(self.settings))

    def toggle_play(self):
        if self.media.paused:
            self._spawn(self._autoplay())
        else:
            self.media.pause()

    def handle_key(self, key: str, input_focused: bool = False) -> bool:
        """
        Apply a keyboard shortcut. Returns True when the key was consumed
        (the host should suppress its default action).
        """
        if input_focused:
            return False

        channel_mode = self.settings.arrow_keys_change_channel
        if key in (" ", "k"):
            self.toggle_play()
        elif key == "f":
            self.view.toggle_fullscreen()
        elif key == "m":
            self.media.muted = not self.media.muted
        elif key == "ArrowUp":
            if channel_mode:
                self.channel_up()
            else:
                self.set_volume(self.media.volume + VOLUME_STEP)
        elif key == "ArrowDown":
            if channel_mode:
                self.channel_down()
            else:
                self.set_volume(self.media.volume - VOLUME_STEP)
        elif key == "ArrowLeft":
            if channel_mode:
                self.set_volume(self.media.volume - VOLUME_STEP)
        elif key == "ArrowRight":
            if channel_mode:
                self.set_volume(self.media.volume + VOLUME_STEP)
        elif key in ("PageUp", "ChannelUp"):
            self.channel_up()
        elif key in ("PageDown", "ChannelDown"):
            self.channel_down()
        elif key == "i":
            if self.overlay_visible:
                self.hide_overlay()
            else:
                self.show_overlay()
        else:
            return False
        return True
