"""
Error taxonomy for the compression proxy.

Each stage raises the error describing what went wrong; the mapping to a
client-facing response lives in ``failures.py``.
"""

from typing import Optional


class ProxyError(Exception):
    """Base class for every failure the proxy pipeline knows how to handle."""


class InvalidURL(ProxyError):
    """The ``url`` query parameter is not an absolute http(s) URL."""

    def __init__(self, url: str, reason: str = "malformed URL"):
        super().__init__(f"Invalid URL {url!r}: {reason}")
        self.url = url
        self.reason = reason


class UpstreamError(ProxyError):
    """Transport-level failure talking to the origin (DNS, connect, TLS, timeout)."""


class UpstreamRejected(ProxyError):
    """The origin answered with an error status or an unfollowed redirect."""

    def __init__(self, status_code: int, location: Optional[str] = None):
        message = f"Origin responded with status {status_code}"
        if location:
            message += f" (location: {location})"
        super().__init__(message)
        self.status_code = status_code
        self.location = location


class TranscodeError(ProxyError):
    """The image could not be probed, decoded or encoded."""


class RequestCancelled(ProxyError):
    """The client went away while the request was still being processed."""
