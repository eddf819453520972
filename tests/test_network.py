"""
Tests for the low-level network probes.
"""

import asyncio

import httpx
import pytest

from app import network


@pytest.mark.asyncio
async def test_probe_port_open():
    server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        assert await network.probe_port("127.0.0.1", port, timeout=2) is True
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_probe_port_closed():
    # Bind then release to get a port nobody listens on
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    assert await network.probe_port("127.0.0.1", port, timeout=2) is False


@pytest.mark.asyncio
async def test_probe_port_times_out(monkeypatch):
    async def hang(host, port):
        await asyncio.Event().wait()

    monkeypatch.setattr(network.asyncio, "open_connection", hang)
    loop = asyncio.get_running_loop()
    started = loop.time()
    assert await network.probe_port("192.0.2.1", 554, timeout=0.1) is False
    assert loop.time() - started < 1


@pytest.mark.asyncio
async def test_probe_port_closes_socket(monkeypatch):
    closed = []

    class Writer:
        def close(self):
            closed.append(True)

        async def wait_closed(self):
            pass

    async def connect(host, port):
        return object(), Writer()

    monkeypatch.setattr(network.asyncio, "open_connection", connect)
    assert await network.probe_port("10.0.0.1", 554) is True
    assert closed == [True]


@pytest.mark.asyncio
async def test_probe_port_closes_socket_that_opens_at_deadline(monkeypatch):
    closed = []

    class Writer:
        def close(self):
            closed.append(True)

        async def wait_closed(self):
            pass

    async def connect(host, port):
        # The handshake completes just as the timeout cancels it
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            return object(), Writer()

    monkeypatch.setattr(network.asyncio, "open_connection", connect)
    await network.probe_port("10.0.0.1", 554, timeout=0.05)
    assert closed == [True]


class HangingProcess:
    def __init__(self):
        self.killed = False

    async def communicate(self):
        await asyncio.Event().wait()

    def kill(self):
        self.killed = True

    async def wait(self):
        return -9


@pytest.mark.asyncio
async def test_run_probe_command_kills_child_when_cancelled(monkeypatch):
    proc = HangingProcess()

    async def spawn(*cmd, **kwargs):
        return proc

    monkeypatch.setattr(network.asyncio, "create_subprocess_exec", spawn)
    task = asyncio.create_task(network.run_probe_command(["traceroute", "10.0.0.1"], timeout=30))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert proc.killed


@pytest.mark.asyncio
async def test_run_probe_command_kills_child_on_timeout(monkeypatch):
    proc = HangingProcess()

    async def spawn(*cmd, **kwargs):
        return proc

    monkeypatch.setattr(network.asyncio, "create_subprocess_exec", spawn)
    result = await network.run_probe_command(["ping", "10.0.0.1"], timeout=0.05)
    assert result.success is False
    assert "timed out" in result.output
    assert proc.killed


@pytest.mark.asyncio
async def test_run_probe_command_missing_binary():
    result = await network.run_probe_command(["definitely-not-a-real-binary-xyz"], timeout=1)
    assert result.success is False
    assert "not installed" in result.output


@pytest.mark.asyncio
async def test_ping_host_uses_bounded_command(monkeypatch):
    seen = {}

    async def fake_run(cmd, timeout):
        seen["cmd"] = cmd
        seen["timeout"] = timeout
        return network.ProbeResult(True, "2 packets transmitted, 2 received")

    monkeypatch.setattr(network, "run_probe_command", fake_run)
    result = await network.ping_host("192.168.1.50")
    assert result.success
    assert seen["cmd"] == ["ping", "-c", "2", "-W", "2", "192.168.1.50"]
    assert seen["timeout"] == network.PING_TIMEOUT


@pytest.mark.asyncio
async def test_internet_check_handles_http_errors(monkeypatch):
    def handler(request):
        raise httpx.ConnectError("no route", request=request)

    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(network.httpx, "AsyncClient", client_factory)
    assert await network.check_internet_connectivity() is False


@pytest.mark.asyncio
async def test_internet_check_success(monkeypatch):
    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        return real_client(transport=transport, **kwargs)

    monkeypatch.setattr(network.httpx, "AsyncClient", client_factory)
    assert await network.check_internet_connectivity() is True


@pytest.mark.parametrize("host", ["192.168.1.50", "fe80::1", "camera.local", "cam-01"])
def test_is_valid_host_accepts(host):
    assert network.is_valid_host(host)


@pytest.mark.parametrize("host", ["", "-c", "--help", "a b", "1.2.3.4; rm -rf /", "x" * 300])
def test_is_valid_host_rejects(host):
    assert not network.is_valid_host(host)


def test_get_ip_address_override(monkeypatch):
    monkeypatch.setenv("CAMERA_RELAY_HOST_ADDRESS", "192.168.18.2")
    assert network.get_ip_address() == "192.168.18.2"
