"""
Low-level network probes used by the diagnostics engine.

Every probe carries its own timeout and reports failure as a value, never as
an exception.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import re
import socket
from contextlib import suppress
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

PORT_PROBE_TIMEOUT = 3.0
PING_TIMEOUT = 10.0
TRACEROUTE_TIMEOUT = 30.0
INTERNET_CHECK_TIMEOUT = 5.0
INTERNET_CHECK_URL = "https://www.google.com"

_HOSTNAME_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,62})(?:\.[A-Za-z0-9-]{1,63})*\.?$")


@dataclass
class ProbeResult:
    success: bool
    output: str


def is_valid_host(host: str) -> bool:
    """Accept IP literals and DNS names; reject anything option-like."""
    if not host or len(host) > 253:
        return False
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        return bool(_HOSTNAME_RE.match(host))


def get_ip_address() -> str:
    """
    Best guess at the address other LAN devices reach this server on.

    ``CAMERA_RELAY_HOST_ADDRESS`` wins if set.  Otherwise the source address of
    the default route is used (a UDP ``connect`` sends no packets).
    """
    override = os.environ.get("CAMERA_RELAY_HOST_ADDRESS")
    if override:
        return override
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("8.8.8.8", 80))
        address = sock.getsockname()[0]
    except OSError:
        return "localhost"
    finally:
        sock.close()
    if address.startswith("127.") or address == "0.0.0.0":
        return "localhost"
    return address


async def probe_port(host: str, port: int, timeout: float = PORT_PROBE_TIMEOUT) -> bool:
    """Return *True* if a TCP connection to ``host:port`` opens within *timeout*."""
    writer = None
    try:
        async with asyncio.timeout(timeout):
            _, writer = await asyncio.open_connection(host, port)
        return True
    except asyncio.TimeoutError:
        logger.debug("Port probe %s:%d timed out after %.1fs", host, port, timeout)
        return False
    except OSError as exc:
        logger.debug("Port probe %s:%d failed: %s", host, port, exc)
        return False
    finally:
        if writer is not None:
            writer.close()
            with suppress(OSError):
                await writer.wait_closed()


async def run_probe_command(cmd: list[str], timeout: float) -> ProbeResult:
    """Run a diagnostic command, capturing combined output."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except FileNotFoundError:
        logger.warning("%s is not installed", cmd[0])
        return ProbeResult(False, f"{cmd[0]} is not installed")
    except OSError as exc:
        return ProbeResult(False, f"Failed to run {cmd[0]}: {exc}")

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        with suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        return ProbeResult(False, f"{cmd[0]} timed out after {timeout:.0f}s")
    except asyncio.CancelledError:
        with suppress(ProcessLookupError):
            proc.kill()
        raise

    output = stdout.decode(errors="replace")
    if proc.returncode != 0:
        return ProbeResult(False, output or f"{cmd[0]} exited with code {proc.returncode}")
    return ProbeResult(True, output)


async def ping_host(host: str, timeout: float = PING_TIMEOUT) -> ProbeResult:
    # Two packets keep the check quick
    return await run_probe_command(["ping", "-c", "2", "-W", "2", host], timeout)


async def traceroute(host: str, timeout: float = TRACEROUTE_TIMEOUT) -> str:
    result = await run_probe_command(["traceroute", "-m", "10", "-w", "2", host], timeout)
    return result.output


async def check_internet_connectivity(
    url: str = INTERNET_CHECK_URL, timeout: float = INTERNET_CHECK_TIMEOUT
) -> bool:
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as client:
            response = await client.get(url)
    except httpx.HTTPError as exc:
        logger.info("Internet connectivity check failed: %s", exc)
        return False
    return len(response.content) > 0
