import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest
from unittest.mock import AsyncMock, Mock, patch

from errors import ProcessSpawnError
from models import TranscodeMode
from process_supervisor import (
    ProcessSupervisor,
    SupervisedStreamingResponse,
    TranscodeSession,
    build_ffmpeg_command,
)

SOURCE = "http://provider.test/live/u/p/42.ts"


class FakeProcess:
    """Stands in for asyncio.subprocess.Process; exits only when killed."""

    def __init__(self, chunks=(), eof=True, pid=4321):
        self.pid = pid
        self.returncode = None
        self.kill_calls = 0
        self.stdout = asyncio.StreamReader()
        for chunk in chunks:
            self.stdout.feed_data(chunk)
        if eof:
            self.stdout.feed_eof()
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_data(b"[mpegts] Warning: PES packet size mismatch\n")
        self.stderr.feed_eof()
        self._exited = asyncio.Event()

    def kill(self):
        self.kill_calls += 1
        self.returncode = -9
        self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode


def spawn_returning(process):
    return patch("process_supervisor.asyncio.create_subprocess_exec", AsyncMock(return_value=process))


def write_fake_ffmpeg(directory, body):
    """Shell script that ignores its FFmpeg arguments and runs ``body``."""
    path = directory / "ffmpeg"
    path.write_text("#!/bin/sh\n" + body)
    os.chmod(path, 0o755)
    return str(path)


posix_only = pytest.mark.skipif(os.name != "posix", reason="needs /bin/sh")


class TestBuildCommand:

    def test_remux_copies_all_streams(self):
        cmd = build_ffmpeg_command("ffmpeg", SOURCE, TranscodeMode.REMUX)
        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-i") + 1] == SOURCE
        assert cmd[cmd.index("-c") + 1] == "copy"
        assert cmd[cmd.index("-bsf:a") + 1] == "aac_adtstoasc"
        assert "-c:a" not in cmd

    def test_transcode_reencodes_audio_only(self):
        cmd = build_ffmpeg_command("/usr/bin/ffmpeg", SOURCE, TranscodeMode.TRANSCODE, audio_bitrate="128k")
        assert cmd[cmd.index("-c:v") + 1] == "copy"
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert cmd[cmd.index("-ac") + 1] == "2"
        assert "0:a:0?" in cmd

    def test_output_is_fragmented_mp4_on_stdout(self):
        cmd = build_ffmpeg_command("ffmpeg", SOURCE, TranscodeMode.REMUX)
        assert cmd[-5:] == ["-f", "mp4", "-movflags", "frag_keyframe+empty_moov+default_base_moof", "-"]

    def test_input_resilience_flags(self):
        cmd = build_ffmpeg_command("ffmpeg", SOURCE, TranscodeMode.TRANSCODE)
        assert cmd.index("-reconnect") < cmd.index("-i")
        assert "+genpts+discardcorrupt+igndts" in cmd


class TestTranscodeSession:

    @pytest.mark.asyncio
    async def test_output_streams_stdout_and_kills_on_eof(self):
        process = FakeProcess(chunks=[b"ftyp", b"moof"])
        session = TranscodeSession(SOURCE, TranscodeMode.REMUX, ffmpeg_path="ffmpeg")
        with spawn_returning(process):
            await session.start()

        data = b"".join([chunk async for chunk in session.output()])
        await session.close()

        assert data == b"ftypmoof"
        assert session.bytes_served == 8
        assert process.kill_calls == 1

    @pytest.mark.asyncio
    async def test_terminate_is_idempotent(self):
        process = FakeProcess()
        session = TranscodeSession(SOURCE, TranscodeMode.REMUX)
        with spawn_returning(process):
            await session.start()

        session.terminate()
        session.terminate()
        await session.close()

        assert process.kill_calls == 1

    @pytest.mark.asyncio
    async def test_terminate_tolerates_already_exited_process(self):
        process = FakeProcess()
        process.kill = Mock(side_effect=ProcessLookupError)
        session = TranscodeSession(SOURCE, TranscodeMode.TRANSCODE)
        with spawn_returning(process):
            await session.start()

        session.terminate()
        process.kill.assert_called_once()
        process._exited.set()
        await session.close()

    @pytest.mark.asyncio
    async def test_terminate_skips_reaped_process(self):
        process = FakeProcess()
        session = TranscodeSession(SOURCE, TranscodeMode.REMUX)
        with spawn_returning(process):
            await session.start()
        process.returncode = 0

        session.terminate()

        assert process.kill_calls == 0
        process._exited.set()
        await session.close()
        assert process.kill_calls == 0

    @pytest.mark.asyncio
    async def test_spawn_failure(self):
        session = TranscodeSession(SOURCE, TranscodeMode.REMUX, ffmpeg_path="/missing/ffmpeg")
        with patch("process_supervisor.asyncio.create_subprocess_exec",
                   AsyncMock(side_effect=FileNotFoundError("/missing/ffmpeg"))):
            with pytest.raises(ProcessSpawnError):
                await session.start()
        assert session.process is None

    @pytest.mark.asyncio
    async def test_command_passed_to_subprocess(self):
        process = FakeProcess()
        spawn = AsyncMock(return_value=process)
        session = TranscodeSession(SOURCE, TranscodeMode.TRANSCODE, ffmpeg_path="ffmpeg")
        with patch("process_supervisor.asyncio.create_subprocess_exec", spawn):
            await session.start()
        await session.close()

        args = spawn.call_args[0]
        assert args[0] == "ffmpeg"
        assert SOURCE in args
        assert session.pid == 4321

    @pytest.mark.asyncio
    async def test_kill_exit_not_logged_as_error(self, caplog):
        process = FakeProcess(chunks=[b"ftyp"])
        session = TranscodeSession(SOURCE, TranscodeMode.REMUX)
        with spawn_returning(process):
            await session.start()

        with caplog.at_level(logging.DEBUG, logger="process_supervisor"):
            [chunk async for chunk in session.output()]
            await session.close()

        assert process.kill_calls == 1
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert any("exited after kill" in r.getMessage() for r in caplog.records)

    @posix_only
    @pytest.mark.asyncio
    async def test_crash_after_output_logged_as_error(self, tmp_path, caplog):
        # Writes some output, then fails before the stdout EOF is acted on
        ffmpeg = write_fake_ffmpeg(tmp_path, "printf 'ftyp'\nsleep 0.2\nexit 1\n")
        session = TranscodeSession(SOURCE, TranscodeMode.REMUX, ffmpeg_path=ffmpeg)

        with caplog.at_level(logging.DEBUG, logger="process_supervisor"):
            await session.start()
            data = b"".join([chunk async for chunk in session.output()])
            await session.close()

        assert data == b"ftyp"
        assert session.process.returncode == 1
        errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
        assert any("exited with code 1" in message for message in errors)
        assert not any("exited after kill" in r.getMessage() for r in caplog.records)


async def never_disconnect():
    await asyncio.Event().wait()


async def disconnect_now():
    return {"type": "http.disconnect"}


HTTP_SCOPE = {"type": "http", "asgi": {"spec_version": "2.0"}, "method": "GET", "headers": []}


class TestProcessSupervisor:

    @pytest.mark.asyncio
    async def test_serve_registers_session_and_sets_headers(self):
        supervisor = ProcessSupervisor(ffmpeg_path="ffmpeg")
        process = FakeProcess(chunks=[b"data"])
        with spawn_returning(process):
            response = await supervisor.serve(SOURCE, TranscodeMode.REMUX)

        assert isinstance(response, SupervisedStreamingResponse)
        assert response.media_type == "video/mp4"
        assert response.headers["accept-ranges"] == "none"
        sessions = supervisor.active_sessions()
        assert len(sessions) == 1
        assert sessions[0]["mode"] == "remux"
        assert sessions[0]["pid"] == 4321

        await supervisor.shutdown()
        assert supervisor.sessions == {}
        assert process.kill_calls == 1

    @pytest.mark.asyncio
    async def test_serve_spawn_failure_raises_before_response(self):
        supervisor = ProcessSupervisor(ffmpeg_path="ffmpeg")
        with patch("process_supervisor.asyncio.create_subprocess_exec",
                   AsyncMock(side_effect=PermissionError("denied"))):
            with pytest.raises(ProcessSpawnError):
                await supervisor.serve(SOURCE, TranscodeMode.TRANSCODE)
        assert supervisor.sessions == {}

    @pytest.mark.asyncio
    async def test_response_completes_and_cleans_up(self):
        supervisor = ProcessSupervisor(ffmpeg_path="ffmpeg")
        process = FakeProcess(chunks=[b"ftyp", b"moof"])
        with spawn_returning(process):
            response = await supervisor.serve(SOURCE, TranscodeMode.REMUX)

        send = AsyncMock()
        await response(HTTP_SCOPE, never_disconnect, send)

        messages = [call.args[0] for call in send.call_args_list]
        assert messages[0]["type"] == "http.response.start"
        body = b"".join(m.get("body", b"") for m in messages if m["type"] == "http.response.body")
        assert body == b"ftypmoof"
        assert process.kill_calls == 1
        assert supervisor.sessions == {}

    @pytest.mark.asyncio
    async def test_client_disconnect_kills_process(self):
        supervisor = ProcessSupervisor(ffmpeg_path="ffmpeg")
        # FFmpeg keeps producing: stdout never reaches EOF
        process = FakeProcess(chunks=[b"ftyp"], eof=False)
        with spawn_returning(process):
            response = await supervisor.serve(SOURCE, TranscodeMode.TRANSCODE)

        await response(HTTP_SCOPE, disconnect_now, AsyncMock())

        assert process.kill_calls == 1
        assert supervisor.sessions == {}

    @posix_only
    @pytest.mark.asyncio
    async def test_client_disconnect_kills_real_process(self, tmp_path):
        # Keeps stdout open far longer than the test is allowed to run
        ffmpeg = write_fake_ffmpeg(tmp_path, "printf 'ftyp'\nexec sleep 30\n")
        supervisor = ProcessSupervisor(ffmpeg_path=ffmpeg)
        response = await supervisor.serve(SOURCE, TranscodeMode.TRANSCODE)
        session = next(iter(supervisor.sessions.values()))

        await asyncio.wait_for(response(HTTP_SCOPE, disconnect_now, AsyncMock()), timeout=5)

        assert session.process.returncode is not None
        assert session.process.returncode < 0
        assert supervisor.sessions == {}
