"""
Shared fakes: an FFmpeg stand-in and a viewer socket stand-in.
"""

import asyncio
import itertools

import pytest

_pids = itertools.count(1000)


class FakeProcess:
    """Looks enough like ``asyncio.subprocess.Process`` for the transcoder."""

    def __init__(self, stubborn=False):
        self.pid = next(_pids)
        self.returncode = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.terminated = False
        self.killed = False
        self._stubborn = stubborn
        self._exited = asyncio.Event()

    def emit(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def terminate(self):
        self.terminated = True
        if not self._stubborn:
            self.exit(-15)

    def kill(self):
        self.killed = True
        self.exit(-9)

    async def wait(self):
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    """Drop-in for ``asyncio.create_subprocess_exec``."""

    def __init__(self, stubborn=False, fail=False):
        self.processes = []
        self.commands = []
        self._stubborn = stubborn
        self._fail = fail

    async def __call__(self, *cmd, **kwargs):
        # Yield so concurrent callers really interleave
        await asyncio.sleep(0)
        if self._fail:
            raise FileNotFoundError(cmd[0])
        proc = FakeProcess(stubborn=self._stubborn)
        self.commands.append(cmd)
        self.processes.append(proc)
        return proc

    @property
    def live(self):
        return [p for p in self.processes if p.returncode is None]


class FakeViewer:
    """Viewer socket.  ``block`` makes sends hang; ``fail`` makes them raise."""

    def __init__(self, block=False, fail=False):
        self.frames = []
        self.closed = False
        self.close_code = None
        self._block = block
        self._fail = fail

    async def send_bytes(self, data):
        if self._fail:
            raise ConnectionResetError("peer went away")
        if self._block:
            await asyncio.Event().wait()
        self.frames.append(data)

    async def close(self, code=1000):
        self.closed = True
        self.close_code = code


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def make_spawner():
    return FakeSpawner


@pytest.fixture
def make_viewer():
    return FakeViewer
