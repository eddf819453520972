"""
Fan-out channel: pushes every transcoded chunk to all attached viewers.

Each viewer has its own bounded queue and sender task, so frames arrive in
order per viewer and one slow socket never holds up the others.  A viewer
whose queue overflows or whose send fails is dropped and its socket closed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

# ~2 s of 1 Mbit/s video in 64 KiB chunks
MAX_BACKLOG = 32
POLICY_VIOLATION = 1008


class ViewerConnection(Protocol):
    async def send_bytes(self, data: bytes) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ChannelClosedError(RuntimeError):
    pass


class FanoutChannel:
    def __init__(
        self,
        name: str,
        max_backlog: int = MAX_BACKLOG,
        on_empty: Callable[[], None] | None = None,
    ) -> None:
        self.name = name
        self.frames_sent = 0
        self._max_backlog = max_backlog
        self._on_empty = on_empty
        self._viewers: dict[ViewerConnection, tuple[asyncio.Queue, asyncio.Task]] = {}
        self._closing: set[asyncio.Task] = set()
        self._closed = False

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    @property
    def closed(self) -> bool:
        return self._closed

    def __contains__(self, connection: object) -> bool:
        return connection in self._viewers

    def attach(self, connection: ViewerConnection) -> None:
        if self._closed:
            raise ChannelClosedError(f"Channel {self.name} is closed")
        if connection in self._viewers:
            return
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_backlog)
        task = asyncio.create_task(self._send_loop(connection, queue))
        self._viewers[connection] = (queue, task)
        logger.info("Viewer attached to %s (total: %d)", self.name, len(self._viewers))

    def detach(self, connection: ViewerConnection) -> bool:
        """Remove *connection*.  Returns *False* if it was not attached."""
        slot = self._viewers.pop(connection, None)
        if slot is None:
            return False
        _, task = slot
        if task is not asyncio.current_task():
            task.cancel()
        logger.info("Viewer detached from %s (total: %d)", self.name, len(self._viewers))
        if not self._viewers and not self._closed and self._on_empty is not None:
            self._on_empty()
        return True

    def broadcast(self, frame: bytes) -> int:
        """Queue *frame* for every viewer; returns how many accepted it."""
        overflowed = []
        delivered = 0
        for connection, (queue, _) in self._viewers.items():
            try:
                queue.put_nowait(frame)
                delivered += 1
            except asyncio.QueueFull:
                overflowed.append(connection)
        for connection in overflowed:
            logger.warning("Viewer on %s is too slow, dropping it", self.name)
            self._drop(connection)
        self.frames_sent += 1
        return delivered

    async def close(self) -> None:
        """Detach everyone and close their sockets."""
        self._closed = True
        viewers = list(self._viewers.items())
        self._viewers.clear()

        current = asyncio.current_task()
        tasks = [task for _, (_, task) in viewers if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await asyncio.gather(
            *(self._close_connection(conn) for conn, _ in viewers),
            *self._closing,
            return_exceptions=True,
        )
        if viewers:
            logger.info("Closed %d viewer(s) on %s", len(viewers), self.name)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _send_loop(self, connection: ViewerConnection, queue: asyncio.Queue) -> None:
        while True:
            frame = await queue.get()
            try:
                await connection.send_bytes(frame)
            except Exception as exc:
                logger.info("Send to viewer on %s failed (%s), dropping it", self.name, exc)
                self._drop(connection)
                return

    def _drop(self, connection: ViewerConnection) -> None:
        if not self.detach(connection):
            return
        task = asyncio.create_task(self._close_connection(connection, POLICY_VIOLATION))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_connection(self, connection: ViewerConnection, code: int = 1000) -> None:
        try:
            await connection.close(code=code)
        except Exception as exc:
            # Already closed by the peer
            logger.debug("Closing viewer on %s: %s", self.name, exc)
