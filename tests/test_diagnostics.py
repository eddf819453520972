"""
Tests for the diagnostics engine: probes are faked, no real network.
"""

import asyncio

import pytest

from app import diagnostics, network
from app.diagnostics import DiagnosticsStatus


def fake_probes(monkeypatch, *, ping=True, port=True, internet=True, server_ip="192.168.18.2"):
    calls = []

    async def fake_ping(host):
        calls.append(("ping", host))
        return network.ProbeResult(ping, "ping output")

    async def fake_probe_port(host, port_number):
        calls.append(("port", host, port_number))
        return port

    async def fake_traceroute(host):
        calls.append(("trace", host))
        return "traceroute output"

    async def fake_internet():
        calls.append(("internet",))
        return internet

    monkeypatch.setattr(network, "ping_host", fake_ping)
    monkeypatch.setattr(network, "probe_port", fake_probe_port)
    monkeypatch.setattr(network, "traceroute", fake_traceroute)
    monkeypatch.setattr(network, "check_internet_connectivity", fake_internet)
    monkeypatch.setattr(network, "get_ip_address", lambda: server_ip)
    return calls


@pytest.mark.parametrize(
    "ping, port, expected",
    [
        (True, True, DiagnosticsStatus.SUCCESS),
        (True, False, DiagnosticsStatus.PARTIAL),
        (False, True, DiagnosticsStatus.PARTIAL),
        (False, False, DiagnosticsStatus.FAILURE),
    ],
)
def test_derive_status(ping, port, expected):
    assert diagnostics.derive_status(ping, port) is expected


@pytest.mark.asyncio
async def test_run_diagnostics_success(monkeypatch):
    calls = fake_probes(monkeypatch)
    result = await diagnostics.run_diagnostics("192.168.18.10", 554)

    assert result.status is DiagnosticsStatus.SUCCESS
    assert result.server.ip_address == "192.168.18.2"
    assert result.server.is_connected_to_internet is True
    assert result.camera.is_reachable and result.camera.is_port_open
    assert result.camera.error is None
    assert result.camera.ping_result == "ping output"
    assert result.camera.traceroute_result == "traceroute output"
    assert ("port", "192.168.18.10", 554) in calls
    assert len(calls) == 4
    assert diagnostics.get_connection_suggestions(result, "192.168.18.10") == []


@pytest.mark.asyncio
async def test_ping_ok_port_closed_is_partial(monkeypatch):
    fake_probes(monkeypatch, ping=True, port=False)
    result = await diagnostics.run_diagnostics("192.168.18.10")

    assert result.status is DiagnosticsStatus.PARTIAL
    assert result.camera.error == "RTSP port is closed or blocked"

    suggestions = diagnostics.get_connection_suggestions(result, "192.168.18.10")
    assert diagnostics.SUGGEST_PORT_CLOSED.format(port=554) in suggestions
    assert diagnostics.SUGGEST_DIFFERENT_NETWORK not in suggestions


@pytest.mark.asyncio
async def test_unreachable_camera(monkeypatch):
    fake_probes(monkeypatch, ping=False, port=False, internet=False, server_ip="10.0.0.4")
    result = await diagnostics.run_diagnostics("192.168.18.10", 8554)

    assert result.status is DiagnosticsStatus.FAILURE
    assert result.camera.error == "Camera IP is not reachable"
    suggestions = diagnostics.get_connection_suggestions(result, "192.168.18.10")
    assert suggestions == [
        diagnostics.SUGGEST_DIFFERENT_NETWORK,
        diagnostics.SUGGEST_NO_INTERNET,
        diagnostics.SUGGEST_UNREACHABLE,
    ]


@pytest.mark.asyncio
async def test_probes_run_concurrently(monkeypatch):
    fake_probes(monkeypatch)
    running = 0
    peak = 0

    async def slow(result):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.05)
        running -= 1
        return result

    monkeypatch.setattr(network, "ping_host", lambda h: slow(network.ProbeResult(True, "")))
    monkeypatch.setattr(network, "probe_port", lambda h, p: slow(True))
    monkeypatch.setattr(network, "traceroute", lambda h: slow(""))
    monkeypatch.setattr(network, "check_internet_connectivity", lambda: slow(True))

    await diagnostics.run_diagnostics("192.168.18.10")
    assert peak == 4


@pytest.mark.asyncio
async def test_diagnostics_bounded_when_everything_hangs(monkeypatch):
    fake_probes(monkeypatch)

    async def hang(*args):
        await asyncio.Event().wait()

    monkeypatch.setattr(network, "ping_host", hang)
    monkeypatch.setattr(network, "probe_port", hang)
    monkeypatch.setattr(network, "traceroute", hang)
    monkeypatch.setattr(network, "check_internet_connectivity", hang)
    monkeypatch.setattr(diagnostics, "PROBE_DEADLINE", 0.1)

    result = await asyncio.wait_for(diagnostics.run_diagnostics("192.0.2.55"), timeout=2)
    assert result.status is DiagnosticsStatus.FAILURE
    assert result.server.is_connected_to_internet is False
    assert result.camera.is_port_open is False


def test_suggestion_for_port_closed_uses_probed_port():
    result = diagnostics.DiagnosticsResult(
        status=DiagnosticsStatus.PARTIAL,
        server=diagnostics.ServerStatus("192.168.1.2", True),
        camera=diagnostics.CameraStatus("192.168.1.9", 8554, True, False),
    )
    assert diagnostics.get_connection_suggestions(result, "192.168.1.9") == [
        diagnostics.SUGGEST_PORT_CLOSED.format(port=8554)
    ]


def test_fallback_suggestion_only_when_nothing_else_fired():
    result = diagnostics.DiagnosticsResult(
        status=DiagnosticsStatus.PARTIAL,
        server=diagnostics.ServerStatus("192.168.1.2", True),
        camera=diagnostics.CameraStatus("192.168.1.9", 554, False, True),
    )
    # Unreachable rule fires, so no fallback
    suggestions = diagnostics.get_connection_suggestions(result, "192.168.1.9")
    assert diagnostics.SUGGEST_UNKNOWN not in suggestions
    assert suggestions == [diagnostics.SUGGEST_UNREACHABLE]


@pytest.mark.parametrize(
    "a, b, same",
    [
        ("192.168.1.2", "192.168.1.200", True),
        ("192.168.1.2", "192.168.2.2", False),
        ("localhost", "192.168.1.2", False),
        ("10.0.0.1", "10.0.0.1", True),
    ],
)
def test_same_network(a, b, same):
    assert diagnostics.same_network(a, b) is same


def test_result_to_dict():
    result = diagnostics.DiagnosticsResult(
        status=DiagnosticsStatus.SUCCESS,
        server=diagnostics.ServerStatus("192.168.1.2", True),
        camera=diagnostics.CameraStatus("192.168.1.9", 554, True, True),
    )
    d = result.to_dict()
    assert d["status"] == "success"
    assert d["camera"]["is_port_open"] is True
    assert d["server"]["ip_address"] == "192.168.1.2"
