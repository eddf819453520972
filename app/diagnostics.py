"""
Network diagnostics: runs every probe against a camera concurrently and
turns the combined outcome into a status and a list of suggestions.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, TypeVar

from . import network
from .rtsp_url import DEFAULT_RTSP_PORT

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Hard ceiling per probe on top of each probe's own timeout
PROBE_DEADLINE = 40.0

SUGGEST_DIFFERENT_NETWORK = (
    "Your camera and server are on different networks. "
    "Consider connecting them to the same network."
)
SUGGEST_NO_INTERNET = (
    "Your server does not have internet connectivity. This may limit some functionality."
)
SUGGEST_UNREACHABLE = (
    "Cannot reach your camera. Verify it is powered on and connected to the network."
)
SUGGEST_PORT_CLOSED = (
    "Your camera is reachable but the RTSP port ({port}) is closed. "
    "Check if your camera has RTSP enabled."
)
SUGGEST_UNKNOWN = (
    "All basic checks passed but connection still fails. Your camera may require "
    "specific authentication or have non-standard RTSP paths."
)


class DiagnosticsStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass
class ServerStatus:
    ip_address: str
    is_connected_to_internet: bool


@dataclass
class CameraStatus:
    ip_address: str
    port: int
    is_reachable: bool
    is_port_open: bool
    ping_result: str = ""
    traceroute_result: str = ""
    error: str | None = None


@dataclass
class DiagnosticsResult:
    status: DiagnosticsStatus
    server: ServerStatus
    camera: CameraStatus

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


def derive_status(is_reachable: bool, is_port_open: bool) -> DiagnosticsStatus:
    if is_reachable and is_port_open:
        return DiagnosticsStatus.SUCCESS
    if is_reachable or is_port_open:
        return DiagnosticsStatus.PARTIAL
    return DiagnosticsStatus.FAILURE


def network_prefix(ip: str) -> str:
    """First three octets of an IPv4 address (``""`` if not dotted-quad)."""
    parts = ip.split(".")
    if len(parts) != 4:
        return ""
    return ".".join(parts[:3])


def same_network(ip1: str, ip2: str) -> bool:
    # /24 approximation; see DESIGN.md
    return network_prefix(ip1) == network_prefix(ip2)


async def _bounded(probe: Awaitable[T], fallback: T) -> T:
    try:
        return await asyncio.wait_for(probe, PROBE_DEADLINE)
    except asyncio.TimeoutError:
        logger.warning("Probe exceeded %.0fs deadline", PROBE_DEADLINE)
        return fallback


async def run_diagnostics(camera_ip: str, rtsp_port: int = DEFAULT_RTSP_PORT) -> DiagnosticsResult:
    """Ping, port-probe, traceroute and internet check, all at once."""
    server_ip = network.get_ip_address()

    ping, port_open, trace, internet = await asyncio.gather(
        _bounded(network.ping_host(camera_ip), network.ProbeResult(False, "ping timed out")),
        _bounded(network.probe_port(camera_ip, rtsp_port), False),
        _bounded(network.traceroute(camera_ip), "traceroute timed out"),
        _bounded(network.check_internet_connectivity(), False),
    )

    if not ping.success:
        error = "Camera IP is not reachable"
    elif not port_open:
        error = "RTSP port is closed or blocked"
    else:
        error = None

    result = DiagnosticsResult(
        status=derive_status(ping.success, port_open),
        server=ServerStatus(ip_address=server_ip, is_connected_to_internet=internet),
        camera=CameraStatus(
            ip_address=camera_ip,
            port=rtsp_port,
            is_reachable=ping.success,
            is_port_open=port_open,
            ping_result=ping.output,
            traceroute_result=trace,
            error=error,
        ),
    )
    logger.info(
        "Diagnostics for %s:%d → %s (ping=%s port=%s internet=%s)",
        camera_ip,
        rtsp_port,
        result.status.value,
        ping.success,
        port_open,
        internet,
    )
    return result


def get_connection_suggestions(result: DiagnosticsResult, camera_ip: str) -> list[str]:
    """Remediation hints, in presentation order.  Several may apply at once."""
    suggestions: list[str] = []

    if not same_network(result.server.ip_address, camera_ip):
        suggestions.append(SUGGEST_DIFFERENT_NETWORK)

    if not result.server.is_connected_to_internet:
        suggestions.append(SUGGEST_NO_INTERNET)

    if not result.camera.is_reachable:
        suggestions.append(SUGGEST_UNREACHABLE)

    if result.camera.is_reachable and not result.camera.is_port_open:
        suggestions.append(SUGGEST_PORT_CLOSED.format(port=result.camera.port))

    if not suggestions and result.status is not DiagnosticsStatus.SUCCESS:
        suggestions.append(SUGGEST_UNKNOWN)

    return suggestions
