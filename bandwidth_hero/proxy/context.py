"""
Per-request context for the compression proxy.

The context is built once from the query parameters and never mutated
afterwards; the origin metadata is attached by creating a new instance
through :meth:`RequestContext.with_origin`.
"""

import ipaddress
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Mapping, Optional
from urllib.parse import unquote

import httpx

from bandwidth_hero.proxy.errors import InvalidURL

DEFAULT_QUALITY = 40
VIA_SIGNATURE = "1.1 bandwidth-hero"
ALLOWED_SCHEMES = ("http", "https")

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


class OutputFormat(str, Enum):
    """Formats the transcoder can produce."""

    WEBP = "webp"
    JPEG = "jpeg"

    @property
    def content_type(self) -> str:
        return f"image/{self.value}"


@dataclass(frozen=True)
class RequestContext:
    url: str
    output_format: OutputFormat = OutputFormat.WEBP
    grayscale: bool = True
    quality: int = DEFAULT_QUALITY
    origin_type: str = ""
    origin_size: int = 0
    origin_known: bool = False

    @property
    def webp(self) -> bool:
        return self.output_format is OutputFormat.WEBP

    def with_origin(self, origin_type: str, origin_size: int) -> "RequestContext":
        """Return a copy carrying the origin content type and length."""
        if self.origin_known:
            raise ValueError("origin metadata is already set for this request")
        if origin_size < 0:
            raise ValueError(f"origin size must not be negative, got {origin_size}")
        return replace(
            self,
            origin_type=origin_type or "",
            origin_size=origin_size,
            origin_known=True,
        )


def parse_quality(raw: Optional[str]) -> int:
    """
    Parse the ``l`` parameter.

    Only the leading integer is considered (``"55abc"`` is 55). Missing,
    unparsable and zero values fall back to :data:`DEFAULT_QUALITY`. The value
    is not clamped.
    """
    if raw is None:
        return DEFAULT_QUALITY
    match = _LEADING_INT.match(raw)
    if not match:
        return DEFAULT_QUALITY
    return int(match.group(1)) or DEFAULT_QUALITY


def parse_grayscale(raw: Optional[str]) -> bool:
    """Grayscale stays on unless ``bw`` is numerically zero (``""`` counts as zero)."""
    if raw is None:
        return True
    try:
        return float(raw.strip() or "0") != 0
    except ValueError:
        return True


def parse_output_format(raw: Optional[str]) -> OutputFormat:
    return OutputFormat.JPEG if raw else OutputFormat.WEBP


def validate_url(raw: str) -> str:
    """Percent-decode the target URL and make sure it is absolute http(s)."""
    url = unquote(raw).strip()
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, ValueError, TypeError) as e:
        raise InvalidURL(url, str(e)) from e
    if parsed.scheme not in ALLOWED_SCHEMES:
        raise InvalidURL(url, f"unsupported scheme {parsed.scheme!r}")
    if not parsed.host:
        raise InvalidURL(url, "missing host")
    return url


def build_request_context(
    url: str,
    jpeg: Optional[str] = None,
    bw: Optional[str] = None,
    quality: Optional[str] = None,
) -> RequestContext:
    return RequestContext(
        url=validate_url(url),
        output_format=parse_output_format(jpeg),
        grayscale=parse_grayscale(bw),
        quality=parse_quality(quality),
    )


def is_loopback(address: Optional[str]) -> bool:
    if not address:
        return False
    try:
        ip = ipaddress.ip_address(address.strip().strip("[]"))
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_loopback


def forwarded_address(headers: Mapping[str, str], client_host: Optional[str]) -> str:
    """The address the request claims to come from: ``x-forwarded-for`` or the peer."""
    return headers.get("x-forwarded-for") or client_host or ""


def is_proxy_loop(headers: Mapping[str, str], client_host: Optional[str]) -> bool:
    """
    True when the request was sent by this proxy to itself.

    Such a request carries our ``via`` signature and originates from a
    loopback address.
    """
    if headers.get("via") != VIA_SIGNATURE:
        return False
    return is_loopback(forwarded_address(headers, client_host))
