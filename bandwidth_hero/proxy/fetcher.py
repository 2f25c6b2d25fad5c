"""
Origin fetch for the compression proxy.

Opens exactly one upstream request per client request and hands back the
response with its body still unread, so that the body can be streamed either
into the transcoder or straight back to the client.
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Dict, List, Mapping, Optional, Tuple, Union

import httpx

from bandwidth_hero.proxy.cancellation import CancellationToken
from bandwidth_hero.proxy.context import VIA_SIGNATURE, RequestContext, forwarded_address
from bandwidth_hero.proxy.errors import UpstreamError, UpstreamRejected
from bandwidth_hero.vars import PROXY_TIMEOUT

logger = logging.getLogger("uvicorn.error")

USER_AGENT = "Bandwidth-Hero Compressor"

# Client headers that are passed on to the origin
FORWARDED_CLIENT_HEADERS = ("cookie", "dnt", "referer", "range")

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

CROSS_ORIGIN_HEADERS = {
    "access-control-allow-origin": "*",
    "cross-origin-resource-policy": "cross-origin",
    "cross-origin-embedder-policy": "unsafe-none",
}


def pick(headers: Mapping[str, str], keys) -> Dict[str, str]:
    return {k: headers[k] for k in keys if headers.get(k) is not None}


def header_bytes(value: str) -> bytes:
    """
    Undo the latin-1 decoding ASGI servers apply to header values.

    Client headers are forwarded byte for byte, so non-ASCII cookies or
    referers reach the origin exactly as the client sent them.
    """
    try:
        return value.encode("latin-1")
    except UnicodeEncodeError:
        return value.encode("utf-8")


def prepare_headers(
    headers: Mapping[str, str], client_host: Optional[str]
) -> Dict[str, Union[str, bytes]]:
    """Headers for the upstream request: a small allow-list plus proxy identification."""
    upstream: Dict[str, Union[str, bytes]] = {
        name: header_bytes(value)
        for name, value in pick(headers, FORWARDED_CLIENT_HEADERS).items()
    }
    upstream["user-agent"] = USER_AGENT
    upstream["x-forwarded-for"] = header_bytes(forwarded_address(headers, client_host))
    upstream["via"] = VIA_SIGNATURE
    return upstream


def parse_content_length(value: Optional[str]) -> int:
    try:
        size = int((value or "").strip())
    except ValueError:
        return 0
    return size if size > 0 else 0


class OriginResponse:
    """
    Upstream response whose body can be consumed exactly once.

    The body is yielded decoded (any content-encoding applied by the origin is
    undone by httpx), which is why the client response always advertises
    ``content-encoding: identity``.
    """

    def __init__(self, response: httpx.Response, elapsed: float = 0.0):
        self._response = response
        self._consumed = False
        self._closed = False
        self.elapsed = elapsed

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def content_length(self) -> int:
        return parse_content_length(self.headers.get("content-length"))

    @property
    def content_encoded(self) -> bool:
        encoding = self.headers.get("content-encoding", "").strip().lower()
        return encoding not in ("", "identity")

    def client_headers(self) -> List[Tuple[str, str]]:
        """
        Origin headers as they should be relayed to the client.

        Values are taken from the raw bytes and decoded as latin-1, which ASGI
        encodes back to the very same bytes.
        """
        relayed = []
        for raw_name, raw_value in self.headers.raw:
            name = raw_name.decode("latin-1").lower()
            if (
                name in HOP_BY_HOP_HEADERS
                or name == "content-encoding"
                or name in CROSS_ORIGIN_HEADERS
            ):
                continue
            relayed.append((name, raw_value.decode("latin-1")))
        relayed.append(("content-encoding", "identity"))
        relayed.extend(CROSS_ORIGIN_HEADERS.items())
        return relayed

    async def iter_body(
        self, token: Optional[CancellationToken] = None
    ) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError("origin body has already been consumed")
        self._consumed = True
        try:
            async for chunk in self._response.aiter_bytes():
                if token is not None:
                    token.raise_if_cancelled()
                if chunk:
                    yield chunk
        except httpx.HTTPError as e:
            raise UpstreamError(f"Failed reading origin body: {e}") from e

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._response.aclose()


class OriginFetcher:
    """Issues the upstream request for a :class:`RequestContext`."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = PROXY_TIMEOUT,
    ):
        self.timeout = timeout
        self._owns_client = client is None
        # Upstream certificates are not validated
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
            verify=False,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def fetch(
        self,
        context: RequestContext,
        headers: Mapping[str, str],
        client_host: Optional[str],
        token: Optional[CancellationToken] = None,
    ) -> OriginResponse:
        """
        Send the upstream request and return once the response headers arrived.

        Raises:
            UpstreamRejected: the origin answered >= 400, or 3xx with a Location.
            UpstreamError: the request failed at the transport level or timed out.
        """
        started = time.perf_counter()
        try:
            request = self.client.build_request(
                "GET", context.url, headers=prepare_headers(headers, client_host)
            )
            send = asyncio.wait_for(self.client.send(request, stream=True), self.timeout)
            if token is not None:
                response = await token.guard(send)
            else:
                response = await send
        except asyncio.TimeoutError as e:
            raise UpstreamError(
                f"Origin did not respond within {self.timeout}s: {context.url}"
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise UpstreamError(f"{type(e).__name__} fetching {context.url}: {e}") from e

        origin = OriginResponse(response, elapsed=time.perf_counter() - started)
        logger.debug(
            f"[Fetch] {context.url} -> {origin.status_code} in {origin.elapsed * 1000:.1f}ms"
        )

        location = origin.headers.get("location")
        if origin.status_code >= 400 or (300 <= origin.status_code < 400 and location):
            # The client is redirected right away, the error body is never read
            try:
                await origin.aclose()
            except httpx.HTTPError as e:
                logger.debug(f"[Fetch] Error closing rejected origin response: {e}")
            raise UpstreamRejected(origin.status_code, location)
        return origin
