"""
Transcode supervisor: owns one FFmpeg process that reads an RTSP source and
writes MPEG-TS to stdout.

Design notes
------------
* RUNNING is entered right after spawn.  FFmpeg gives no clean "ready"
  signal, so a dead or silent source looks connected until it exits.
* Any exit ends the stream.  There is no automatic restart: a fresh
  ``acquire`` rebuilds it, which keeps an offline camera from busy-looping.
* stderr is kept only as a short tail for log messages, never parsed.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import deque
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable

from .rtsp_url import StreamSource

logger = logging.getLogger(__name__)

FFMPEG_BIN = os.environ.get("CAMERA_RELAY_FFMPEG", "ffmpeg")
CHUNK_SIZE = 64 * 1024
STOP_GRACE_SECONDS = 5.0
STDERR_TAIL_LINES = 20

OutputCallback = Callable[[bytes], Any]
ExitCallback = Callable[["TranscodeProcess", int], Awaitable[None]]


class StreamState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


def build_ffmpeg_cmd(source_url: str) -> list[str]:
    """RTSP in, low-latency MPEG-1 video + mono MP2 audio in MPEG-TS out."""
    return [
        FFMPEG_BIN,
        "-hide_banner",
        "-nostdin",
        "-nostats",
        "-loglevel",
        "warning",
        "-i",
        source_url,
        "-f",
        "mpegts",
        # Video
        "-codec:v",
        "mpeg1video",
        "-s",
        "640x480",
        "-b:v",
        "1000k",
        "-r",
        "30",
        "-bf",
        "0",
        "-q:v",
        "3",
        # Audio
        "-codec:a",
        "mp2",
        "-ar",
        "44100",
        "-ac",
        "1",
        "-b:a",
        "128k",
        # Low muxing delay
        "-muxdelay",
        "0.001",
        "pipe:1",
    ]


class TranscodeProcess:
    """One FFmpeg subprocess and the tasks pumping its pipes."""

    def __init__(
        self,
        source: StreamSource,
        on_output: OutputCallback,
        on_exit: ExitCallback,
        spawn: Callable[..., Awaitable[Any]] | None = None,
        stop_grace: float = STOP_GRACE_SECONDS,
    ) -> None:
        self.source = source
        self.state = StreamState.STARTING
        self.process = None
        self.returncode: int | None = None
        self.bytes_out = 0

        self._on_output = on_output
        self._on_exit = on_exit
        self._spawn = spawn
        self._stop_grace = stop_grace
        self._stdout_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    # ------------------------------------------------------------------
    # Start / Stop
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """
        Spawn FFmpeg.  ``OSError`` (e.g. binary missing) and ``ValueError``
        (arguments the OS refuses, such as an embedded NUL) propagate.
        """
        if self.state is not StreamState.STARTING:
            raise RuntimeError(f"Cannot start a transcoder in state {self.state.value}")

        spawn = self._spawn or asyncio.create_subprocess_exec
        cmd = build_ffmpeg_cmd(self.source.url)
        try:
            self.process = await spawn(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError):
            self.state = StreamState.STOPPED
            raise

        self.state = StreamState.RUNNING
        logger.info("Started FFmpeg for %s (pid %s)", self.source.masked_url, self.pid)

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._stdout_task = asyncio.create_task(self._pump_stdout())

    async def stop(self) -> None:
        """Terminate FFmpeg, escalating to SIGKILL after the grace period."""
        if self.process is None:
            self.state = StreamState.STOPPED
            return

        if self.process.returncode is None and self.state is not StreamState.STOPPING:
            self.state = StreamState.STOPPING
            logger.info("Stopping FFmpeg for %s (pid %s)", self.source.masked_url, self.pid)
            with suppress(ProcessLookupError):
                self.process.terminate()
            try:
                await asyncio.wait_for(self.process.wait(), self._stop_grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "FFmpeg pid %s ignored SIGTERM for %.1fs, killing", self.pid, self._stop_grace
                )
                with suppress(ProcessLookupError):
                    self.process.kill()

        self.returncode = await self.process.wait()

        current = asyncio.current_task()
        pending = [
            t for t in (self._stdout_task, self._stderr_task) if t is not None and t is not current
        ]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self.state = StreamState.STOPPED

    # ------------------------------------------------------------------
    # Pipe pumps
    # ------------------------------------------------------------------
    async def _pump_stdout(self) -> None:
        while True:
            chunk = await self.process.stdout.read(CHUNK_SIZE)
            if not chunk:
                break
            self.bytes_out += len(chunk)
            self._on_output(chunk)

        self.returncode = await self.process.wait()
        if self._stderr_task is not None:
            # stderr hits EOF together with process exit
            await asyncio.gather(self._stderr_task, return_exceptions=True)

        if self.state is StreamState.STOPPING:
            return  # stop() owns the rest

        self.state = StreamState.STOPPED
        if self.returncode == 0:
            logger.info("FFmpeg for %s exited cleanly", self.source.masked_url)
        else:
            logger.warning(
                "FFmpeg for %s exited with code %d. stderr: %s",
                self.source.masked_url,
                self.returncode,
                self.stderr_tail.replace("\n", " ")[-300:],
            )
        await self._on_exit(self, self.returncode)

    async def _drain_stderr(self) -> None:
        while True:
            data = await self.process.stderr.read(4096)
            if not data:
                return
            text = data.decode(errors="replace").replace(self.source.url, self.source.masked_url)
            self._stderr_tail.extend(line for line in text.splitlines() if line.strip())
