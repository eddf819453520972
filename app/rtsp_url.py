"""
RTSP URL helpers: parsing, masking, validation and the canonical stream key.

All functions are pure.  ``parse`` is best effort: anything it cannot make
sense of comes back as an empty :class:`RtspUrlParts` so callers can treat the
URL as opaque.
"""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass

DEFAULT_RTSP_PORT = 554
MASK_TOKEN = "******"

# userinfo is greedy up to the first "/", so the *last* "@" before the host
# separates credentials from host (passwords may contain "@").
_RTSP_RE = re.compile(
    r"^rtsps?://"
    r"(?:(?P<userinfo>[^/]*)@)?"
    r"(?P<host>[^:/@\s]+)"
    r"(?::(?P<port>\d+))?"
    r"(?:/(?P<path>.*))?$"
)

_VALID_RE = re.compile(
    r"^rtsps?://"
    r"(?:[^:/@\x00-\x20\x7f]+:[^/\x00-\x20\x7f]+@)?"
    r"[^:/@\x00-\x20\x7f]+"
    r"(?::(?P<port>\d{1,5}))?"
    r"(?:/[^\x00-\x20\x7f]*)?\Z"
)

_CREDENTIALS_RE = re.compile(r"^(?P<prefix>[A-Za-z][\w+.-]*://[^:/@]*):[^/]*@")

_QUALITY_PATHS = {
    "high": "live/ch00_0",
    "low": "live/ch00_1",
}


@dataclass(frozen=True)
class RtspUrlParts:
    """Fields extracted from an RTSP URL.  Empty (falsy) if nothing matched."""

    username: str | None = None
    password: str | None = None
    host: str | None = None
    port: int | None = None
    path: str | None = None

    def __bool__(self) -> bool:
        return self.host is not None


@dataclass(frozen=True)
class StreamSource:
    """Canonical identity of a source URL, used as the registry key."""

    url: str
    key: str

    @classmethod
    def from_url(cls, url: str) -> StreamSource:
        return cls(url=url, key=stream_key(url))

    @property
    def masked_url(self) -> str:
        return mask(self.url)


def stream_key(url: str) -> str:
    """URL-safe base64 of the raw URL bytes, byte-exact, no normalisation."""
    return base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii")


def parse(url: str) -> RtspUrlParts:
    m = _RTSP_RE.match(url or "")
    if not m:
        return RtspUrlParts()

    username = password = None
    userinfo = m.group("userinfo")
    if userinfo:
        username, sep, rest = userinfo.partition(":")
        password = rest if sep else None

    return RtspUrlParts(
        username=username,
        password=password,
        host=m.group("host"),
        port=int(m.group("port")) if m.group("port") else DEFAULT_RTSP_PORT,
        path=m.group("path"),
    )


def mask(url: str) -> str:
    """Replace the password segment with :data:`MASK_TOKEN`."""
    return _CREDENTIALS_RE.sub(rf"\g<prefix>:{MASK_TOKEN}@", url, count=1)


def is_valid(url: str) -> bool:
    m = _VALID_RE.match(url or "")
    if not m:
        return False
    port = m.group("port")
    return port is None or 0 < int(port) <= 65535


def build_url(
    host: str,
    port: int = DEFAULT_RTSP_PORT,
    path: str | None = None,
    username: str | None = None,
    password: str | None = None,
) -> str:
    """Assemble an RTSP URL from camera fields."""
    credentials = ""
    if username:
        credentials = f"{username}:{password}@" if password else f"{username}@"
    suffix = f"/{path.lstrip('/')}" if path else ""
    return f"rtsp://{credentials}{host}:{port}{suffix}"


def alternative_stream_url(url: str, quality: str) -> str:
    """
    Switch between main (``high``) and sub (``low``) stream paths using the
    ``live/ch00_N`` layout common to V380-style cameras.  Returns *url*
    unchanged if it lacks credentials or cannot be parsed.
    """
    parts = parse(url)
    if not parts or not parts.username or not parts.password:
        return url
    if quality not in _QUALITY_PATHS:
        raise ValueError(f"Unknown stream quality '{quality}' (expected 'high' or 'low')")
    return build_url(
        parts.host,
        parts.port,
        _QUALITY_PATHS[quality],
        parts.username,
        parts.password,
    )
