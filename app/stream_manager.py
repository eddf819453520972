"""
Stream Registry: one transcoder + fan-out channel per RTSP source.

Design notes
------------
* Streams are keyed by :class:`StreamSource` (base64 of the raw URL).  At most
  one :class:`ActiveStream`, and so at most one FFmpeg process, exists per key.
* Everything runs on one event loop.  Map mutations happen between awaits, so
  check-and-insert is atomic without a lock.  Slow work (spawn, stop) runs in
  a task per key that concurrent callers share through ``asyncio.shield``.
* When the last viewer leaves, the stream's idle reaper counts down
  ``IDLE_GRACE_SECONDS`` and tears it down unless someone re-attaches first.
* FFmpeg exiting for any reason removes the stream and closes its viewers.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Awaitable, Callable

from .fanout import MAX_BACKLOG, FanoutChannel, ViewerConnection
from .rtsp_url import StreamSource
from .transcode import STOP_GRACE_SECONDS, StreamState, TranscodeProcess

logger = logging.getLogger(__name__)

IDLE_GRACE_SECONDS = float(os.environ.get("CAMERA_RELAY_IDLE_GRACE", "60"))

# (title, message, severity), severity is "info" | "warning" | "alert"
EventCallback = Callable[[str, str, str], None]


class StreamStartError(RuntimeError):
    """FFmpeg could not be spawned, or died before the stream was registered."""


class ActiveStream:
    """A running transcoder, its viewers, and its idle-teardown countdown."""

    def __init__(
        self,
        source: StreamSource,
        reap: Callable[[ActiveStream], Awaitable[Any]],
        on_exit: Callable[[ActiveStream, int], Awaitable[None]],
        spawn: Callable[..., Awaitable[Any]] | None = None,
        idle_grace: float = IDLE_GRACE_SECONDS,
        stop_grace: float = STOP_GRACE_SECONDS,
        max_backlog: int = MAX_BACKLOG,
    ) -> None:
        self.source = source
        self.created_at = time.time()
        self.channel = FanoutChannel(
            source.masked_url, max_backlog=max_backlog, on_empty=self.arm
        )
        self.transcoder = TranscodeProcess(
            source,
            on_output=self.channel.broadcast,
            on_exit=lambda _proc, code: on_exit(self, code),
            spawn=spawn,
            stop_grace=stop_grace,
        )
        self._reap = reap
        self._idle_grace = idle_grace
        self._reaper: asyncio.Task | None = None
        self._reaping = False

    @property
    def stream_id(self) -> str:
        return self.source.key

    @property
    def state(self) -> StreamState:
        return self.transcoder.state

    @property
    def viewer_count(self) -> int:
        return self.channel.viewer_count

    @property
    def is_idle_armed(self) -> bool:
        return self._reaper is not None and not self._reaper.done()

    @property
    def accepting_viewers(self) -> bool:
        return (
            self.state is StreamState.RUNNING and not self._reaping and not self.channel.closed
        )

    async def start(self) -> None:
        await self.transcoder.start()

    async def close(self) -> None:
        """Stop FFmpeg and close every viewer socket."""
        if self._reaper is not None and not self._reaping:
            self._reaper.cancel()
        self._reaper = None
        await self.transcoder.stop()
        await self.channel.close()

    # ------------------------------------------------------------------
    # Idle reaper
    # ------------------------------------------------------------------
    def arm(self) -> None:
        """Start the idle countdown (no-op if already counting)."""
        if self.is_idle_armed or self._reaping or self.channel.closed:
            return
        logger.info(
            "No viewers on %s, tearing down in %.0fs unless one attaches",
            self.source.masked_url,
            self._idle_grace,
        )
        self._reaper = asyncio.create_task(self._reap_when_idle())

    def disarm(self) -> bool:
        """Cancel a pending countdown.  Too late once the teardown has begun."""
        if not self.is_idle_armed or self._reaping:
            return False
        self._reaper.cancel()
        self._reaper = None
        logger.debug("Idle teardown of %s cancelled", self.source.masked_url)
        return True

    async def _reap_when_idle(self) -> None:
        await asyncio.sleep(self._idle_grace)
        if self.channel.viewer_count:
            return
        self._reaping = True
        logger.info("Stream %s idle for %.0fs, tearing down", self.source.masked_url, self._idle_grace)
        await self._reap(self)

    def to_dict(self) -> dict:
        return {
            "id": self.stream_id,
            "source_url": self.source.masked_url,
            "status": self.state.value,
            "viewers": self.viewer_count,
            "pid": self.transcoder.pid,
            "bytes_out": self.transcoder.bytes_out,
            "created_at": self.created_at,
        }


class StreamRegistry:
    """Owns every :class:`ActiveStream`, keyed by stream id."""

    def __init__(
        self,
        spawn: Callable[..., Awaitable[Any]] | None = None,
        idle_grace: float | None = None,
        stop_grace: float = STOP_GRACE_SECONDS,
        max_backlog: int = MAX_BACKLOG,
        on_event: EventCallback | None = None,
    ) -> None:
        self._spawn = spawn
        self._idle_grace = IDLE_GRACE_SECONDS if idle_grace is None else idle_grace
        self._stop_grace = stop_grace
        self._max_backlog = max_backlog
        self._on_event = on_event
        self._streams: dict[str, ActiveStream] = {}
        self._starting: dict[str, asyncio.Task] = {}
        self._stopping: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._streams)

    def __contains__(self, stream_id: object) -> bool:
        return stream_id in self._streams

    def get(self, stream_id: str) -> ActiveStream | None:
        return self._streams.get(stream_id)

    def list_streams(self) -> list[dict]:
        return [s.to_dict() for s in self._streams.values()]

    # ------------------------------------------------------------------
    # Acquire / Remove
    # ------------------------------------------------------------------
    async def acquire(self, source_url: str) -> ActiveStream:
        """Return the live stream for *source_url*, starting it if needed."""
        source = StreamSource.from_url(source_url)
        key = source.key
        while True:
            stream = self._streams.get(key)
            if stream is not None and stream.state is not StreamState.STOPPED:
                stream.disarm()
                return stream

            starting = self._starting.get(key)
            if starting is not None:
                return await asyncio.shield(starting)

            stopping = self._stopping.get(key)
            if stopping is not None:
                # Old FFmpeg must be gone before a new one is spawned
                await asyncio.shield(stopping)
                continue

            task = asyncio.create_task(self._start(source))
            self._starting[key] = task
            return await asyncio.shield(task)

    async def _start(self, source: StreamSource) -> ActiveStream:
        try:
            stream = ActiveStream(
                source,
                reap=lambda s: self.remove(s.stream_id, expected=s),
                on_exit=self._handle_exit,
                spawn=self._spawn,
                idle_grace=self._idle_grace,
                stop_grace=self._stop_grace,
                max_backlog=self._max_backlog,
            )
            try:
                await stream.start()
            except (OSError, ValueError) as exc:
                await stream.close()
                logger.error("Failed to start FFmpeg for %s: %s", source.masked_url, exc)
                raise StreamStartError(f"Failed to start transcoder: {exc}") from exc

            if stream.state is StreamState.STOPPED:
                await stream.close()
                raise StreamStartError(
                    f"Transcoder exited immediately with code {stream.transcoder.returncode}"
                )

            self._streams[source.key] = stream
            # Until a viewer shows up the stream is already idle
            stream.arm()
            return stream
        finally:
            self._starting.pop(source.key, None)

    async def remove(self, stream_id: str, expected: ActiveStream | None = None) -> bool:
        """
        Tear down *stream_id*.  Idempotent: concurrent callers share one stop.
        With *expected*, only that exact stream object is removed.
        """
        stream = self._streams.get(stream_id)
        starting = self._starting.get(stream_id)
        if stream is None and starting is not None and expected is None:
            # Let the start land, then tear down what it produced
            try:
                await asyncio.shield(starting)
            except StreamStartError:
                return False
            return await self.remove(stream_id)

        if stream is None or (expected is not None and stream is not expected):
            stopping = self._stopping.get(stream_id)
            if stopping is not None and expected is None:
                await asyncio.shield(stopping)
            return False

        del self._streams[stream_id]
        task = asyncio.create_task(stream.close())
        self._stopping[stream_id] = task

        def _forget(t: asyncio.Task) -> None:
            if self._stopping.get(stream_id) is t:
                del self._stopping[stream_id]

        task.add_done_callback(_forget)
        await asyncio.shield(task)
        logger.info("Removed stream %s", stream.source.masked_url)
        return True

    async def disconnect(self, source_url: str) -> bool:
        return await self.remove(StreamSource.from_url(source_url).key)

    async def close_all(self) -> None:
        """Stop every stream, including ones still starting."""
        await asyncio.gather(*self._starting.values(), return_exceptions=True)
        await asyncio.gather(*(self.remove(key) for key in list(self._streams)))
        await asyncio.gather(*self._stopping.values(), return_exceptions=True)

    # ------------------------------------------------------------------
    # Viewers
    # ------------------------------------------------------------------
    def attach(self, stream_id: str, connection: ViewerConnection) -> ActiveStream | None:
        """Add a viewer.  Returns *None* if the stream is gone or going."""
        stream = self._streams.get(stream_id)
        if stream is None or not stream.accepting_viewers:
            return None
        stream.disarm()
        stream.channel.attach(connection)
        return stream

    def release(self, stream_id: str, connection: ViewerConnection) -> None:
        """Remove a viewer; the channel arms the reaper when it empties."""
        stream = self._streams.get(stream_id)
        if stream is not None:
            stream.channel.detach(connection)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _handle_exit(self, stream: ActiveStream, returncode: int) -> None:
        if self._streams.get(stream.stream_id) is not stream:
            return
        self._emit(
            "Camera Stream Ended",
            f"Transcoder for {stream.source.masked_url} exited with code {returncode}",
            "info" if returncode == 0 else "alert",
        )
        await self.remove(stream.stream_id, expected=stream)

    def _emit(self, title: str, message: str, severity: str) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(title, message, severity)
        except Exception:
            logger.exception("Event callback failed for %r", title)
