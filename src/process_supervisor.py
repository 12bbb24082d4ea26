"""
FFmpeg supervisor for remux and transcode playback.

Each request gets its own FFmpeg process whose stdout is piped straight
into the HTTP response as fragmented MP4. The process belongs to the
response: whichever ends first (client or FFmpeg), the process is killed
and reaped, and killing it twice is harmless.
"""

import asyncio
import logging
import time
import uuid
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from fastapi.responses import StreamingResponse

from config import settings
from errors import ProcessSpawnError
from models import TranscodeMode

logger = logging.getLogger(__name__)

OUTPUT_CONTENT_TYPE = "video/mp4"

# Exit codes that do not indicate a failure: clean exit, and FFmpeg's
# "interrupted" code when its output pipe goes away.
BENIGN_EXIT_CODES = (0, 255)

STDERR_MARKERS = ("warning", "error")


def build_ffmpeg_command(ffmpeg_path: str, source_url: str, mode: TranscodeMode,
                         audio_bitrate: Optional[str] = None) -> List[str]:
    """
    FFmpeg argv for a live fragmented-MP4 rendition of ``source_url``.

    Both modes favour keeping the stream alive over exactness: corrupt
    packets are dropped, timestamps regenerated and network drops
    reconnected. Remux copies every stream; transcode keeps the video and
    re-encodes audio to stereo AAC for codecs browsers reject (AC3, E-AC3).
    """
    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel", "warning",
        "-fflags", "+genpts+discardcorrupt+igndts",
        "-err_detect", "ignore_err",
        "-reconnect", "1",
        "-reconnect_streamed", "1",
        "-reconnect_delay_max", "5",
        "-i", source_url,
    ]

    if mode == TranscodeMode.TRANSCODE:
        cmd.extend([
            # The '?' makes audio optional - won't fail if no audio exists
            "-map", "0:v:0", "-map", "0:a:0?",
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", audio_bitrate or settings.TRANSCODE_AUDIO_BITRATE,
            "-ac", "2",
        ])
    else:
        cmd.extend([
            "-c", "copy",
            # ADTS framing (MPEG-TS) must become ASC framing inside MP4
            "-bsf:a", "aac_adtstoasc",
        ])

    cmd.extend([
        "-f", "mp4",
        # Fragmented output needs no seek index, so playback can start immediately
        "-movflags", "frag_keyframe+empty_moov+default_base_moof",
        "-",
    ])
    return cmd


class TranscodeSession:
    """One FFmpeg process serving one client connection."""

    def __init__(self, source_url: str, mode: TranscodeMode, ffmpeg_path: Optional[str] = None):
        self.session_id = str(uuid.uuid4())
        self.source_url = source_url
        self.mode = mode
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.process: Optional[asyncio.subprocess.Process] = None
        self.started_at: Optional[float] = None
        self.bytes_served = 0
        self._terminated = False
        self._killed = False
        self._stderr_task: Optional[asyncio.Task] = None
        self._wait_task: Optional[asyncio.Task] = None

    @property
    def tag(self) -> str:
        return f"[{self.mode.value.capitalize()} {self.session_id[:8]}]"

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    async def start(self):
        if self.process is not None:
            raise RuntimeError("session already started")

        cmd = build_ffmpeg_command(self.ffmpeg_path, self.source_url, self.mode)
        logger.info(f"{self.tag} Starting {self.mode.value} for: {self.source_url}")
        logger.debug(f"{self.tag} Full command: {' '.join(cmd)}")

        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except (OSError, ValueError) as e:
            logger.error(f"{self.tag} Failed to spawn FFmpeg: {e}")
            raise ProcessSpawnError(f"FFmpeg spawn failed: {e}")

        self.started_at = time.time()
        logger.info(f"{self.tag} FFmpeg started with PID: {self.process.pid}")
        self._stderr_task = asyncio.create_task(self._log_stderr())
        self._wait_task = asyncio.create_task(self._watch_exit())

    async def _log_stderr(self):
        """Surface FFmpeg warnings and errors in our logs; never to the client."""
        stderr = self.process.stderr if self.process else None
        if stderr is None:
            return

        # Read fixed-size chunks rather than readline(): FFmpeg can emit very
        # long lines without a newline, which overruns StreamReader's limit.
        buf = b""
        try:
            while True:
                chunk = await stderr.read(4096)
                if not chunk:
                    break
                buf += chunk
                while b"\n" in buf:
                    line, buf = buf.split(b"\n", 1)
                    self._inspect_stderr_line(line)
                if len(buf) > 64 * 1024:
                    self._inspect_stderr_line(buf)
                    buf = b""
            if buf:
                self._inspect_stderr_line(buf)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"{self.tag} stderr reader stopped: {e}")

    def _inspect_stderr_line(self, raw: bytes):
        line = raw.decode("utf-8", errors="ignore").strip()
        if not line:
            return
        if any(marker in line.lower() for marker in STDERR_MARKERS):
            logger.warning(f"{self.tag} FFmpeg: {line}")
        else:
            logger.debug(f"{self.tag} FFmpeg: {line}")

    async def _watch_exit(self):
        code = await self.process.wait()
        # A process that died on its own keeps its exit code even if kill() reached it late
        if self._killed and code is not None and code < 0:
            logger.debug(f"{self.tag} FFmpeg exited after kill (code {code})")
        elif code not in BENIGN_EXIT_CODES:
            logger.error(f"{self.tag} FFmpeg exited with code {code}")
        else:
            logger.info(f"{self.tag} FFmpeg finished (code {code})")

    async def output(self, chunk_size: Optional[int] = None) -> AsyncIterator[bytes]:
        """Yield FFmpeg stdout as it is produced. Ends when the pipe closes."""
        if not self.process or not self.process.stdout:
            return
        size = chunk_size or settings.STREAM_CHUNK_SIZE
        try:
            while True:
                chunk = await self.process.stdout.read(size)
                if not chunk:
                    logger.info(f"{self.tag} FFmpeg stdout closed")
                    break
                self.bytes_served += len(chunk)
                yield chunk
        finally:
            self.terminate()

    def terminate(self):
        """Force-kill the process. Safe to call repeatedly and after exit."""
        if self._terminated:
            return
        self._terminated = True

        process = self.process
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
            self._killed = True
            logger.info(f"{self.tag} Killed FFmpeg process {process.pid}")
        except ProcessLookupError:
            # Exited between the returncode check and the kill
            pass

    async def close(self):
        """Kill and reap the process, then stop the helper tasks."""
        self.terminate()
        if self._wait_task:
            try:
                await asyncio.wait_for(asyncio.shield(self._wait_task), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning(f"{self.tag} FFmpeg did not exit after kill")
        if self._stderr_task and not self._stderr_task.done():
            self._stderr_task.cancel()


class SupervisedStreamingResponse(StreamingResponse):
    """
    StreamingResponse that runs ``on_disconnect`` however the response ends:
    body exhausted, client gone, or the serving task cancelled.
    """

    def __init__(self, content, on_disconnect: Callable[[], Awaitable[None]], **kwargs):
        super().__init__(content, **kwargs)
        self.on_disconnect = on_disconnect

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.on_disconnect()


class ProcessSupervisor:
    def __init__(self, ffmpeg_path: Optional[str] = None):
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.sessions: Dict[str, TranscodeSession] = {}

    async def serve(self, source_url: str, mode: TranscodeMode) -> SupervisedStreamingResponse:
        """
        Start FFmpeg for ``source_url`` and return a response streaming its
        output. Raises ProcessSpawnError before any bytes are sent if FFmpeg
        cannot be started.
        """
        session = TranscodeSession(source_url, mode, self.ffmpeg_path)
        await session.start()
        self.sessions[session.session_id] = session

        async def on_disconnect():
            self.sessions.pop(session.session_id, None)
            # Kill synchronously first: the surrounding task may already be cancelled
            session.terminate()
            logger.info(
                f"{session.tag} Client disconnected, served {session.bytes_served} bytes")
            await session.close()

        return SupervisedStreamingResponse(
            session.output(),
            on_disconnect=on_disconnect,
            media_type=OUTPUT_CONTENT_TYPE,
            headers={
                "Cache-Control": "no-cache, no-store, must-revalidate",
                "Access-Control-Allow-Origin": "*",
                # Live output: range requests cannot be honoured
                "Accept-Ranges": "none",
            }
        )

    def active_sessions(self) -> List[dict]:
        return [
            {
                "session_id": s.session_id,
                "mode": s.mode.value,
                "source_url": s.source_url,
                "pid": s.pid,
                "started_at": s.started_at,
                "bytes_served": s.bytes_served,
            }
            for s in self.sessions.values()
        ]

    async def shutdown(self):
        sessions = list(self.sessions.values())
        self.sessions.clear()
        for session in sessions:
            await session.close()
        if sessions:
            logger.info(f"Stopped {len(sessions)} FFmpeg sessions")
