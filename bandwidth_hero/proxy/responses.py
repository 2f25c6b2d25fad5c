"""
Client-facing responses of the compression proxy.

A :class:`ResponseWriter` is created for every request. It collects the
headers relayed from the origin and produces exactly one terminal response:
the transcoded image, the untouched origin bytes, a redirect to the origin,
a plain error, or an aborted connection. Once a response has been committed
every further attempt is ignored.
"""

import logging
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, Tuple
from urllib.parse import quote

import anyio
from fastapi.responses import Response, StreamingResponse
from prometheus_client import Counter
from starlette.datastructures import MutableHeaders

from bandwidth_hero.proxy.cancellation import CancellationToken
from bandwidth_hero.proxy.fetcher import OriginResponse
from bandwidth_hero.proxy.transcoder import TranscodeResult
from bandwidth_hero.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

BYPASS_HEADER = "x-proxy-bypass"
BYPASS_PASSTHROUGH_HEADERS = ("accept-ranges", "content-type", "content-length", "content-range")
REDIRECT_STRIPPED_HEADERS = ("cache-control", "expires", "date", "etag")

# Characters JavaScript's encodeURI leaves untouched besides alphanumerics
_ENCODE_URI_SAFE = ";,/?:@&=+$-_.!~*'()#"

RESPONSES = Counter(
    "bandwidth_hero_responses_total",
    "Responses sent by the compression proxy, by mode",
    ["mode"],
)


def encode_uri(url: str) -> str:
    return quote(url, safe=_ENCODE_URI_SAFE)


class AbortedResponse(Response):
    """
    Response that starts and then fails, making the server drop the connection.

    ASGI has no way to close a connection without answering, so the response
    is started without a length and the original error is raised before any
    body is sent.
    """

    def __init__(self, error: BaseException, status_code: int = 502):
        super().__init__(status_code=status_code)
        self.error = error
        self.raw_headers = [(b"connection", b"close")]

    async def __call__(self, scope, receive, send) -> None:
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )
        raise self.error


class ClosingStreamingResponse(StreamingResponse):
    """
    Streaming response that releases its source once the request is over.

    Starlette leaves the body iterator suspended when sending fails or the
    client goes away between chunks. Here the iterator is closed and
    ``cleanup`` awaited when the request finishes, however it finishes,
    including when the body never started.
    """

    def __init__(self, content, cleanup: Callable[[], Awaitable[None]], **kwargs):
        super().__init__(content, **kwargs)
        self.cleanup = cleanup

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self.body_iterator.aclose()
                await self.cleanup()


class ResponseWriter:
    """Builds the single response sent for one proxied request."""

    def __init__(self):
        self.headers = MutableHeaders()
        self.committed = False
        self.mode: Optional[str] = None

    def _put(self, name: str, value: str, append: bool = False) -> None:
        try:
            if append:
                self.headers.append(name, value)
            else:
                self.headers[name] = value
        except UnicodeEncodeError as e:
            logger.warning(f"[Response] Dropping header {name!r}: {e}")

    def stage(self, headers: Iterable[Tuple[str, str]]) -> None:
        """Queue origin headers to be relayed with whatever response is sent."""
        for name, value in headers:
            self._put(name, value, append=True)

    def _suppressed(self, mode: str) -> None:
        logger.debug(f"[Response] Suppressed {mode} response, {self.mode} was already sent")
        return None

    def _commit(self, response: Response, mode: str) -> Response:
        self.committed = True
        self.mode = mode
        RESPONSES.labels(mode=mode).inc()
        return response

    def _stream(
        self, chunks: AsyncIterator[bytes], token: CancellationToken, url: str
    ) -> AsyncIterator[bytes]:
        async def body():
            sent = 0
            try:
                async for chunk in chunks:
                    sent += len(chunk)
                    yield chunk
            except Exception as e:
                # Headers are out already, the only option left is to drop the connection
                log_exception_with_details(
                    logger, f"[Response] Stream for {url} failed after {sent} bytes;", e
                )
                token.cancel("stream failed")
                raise
            except BaseException:
                # Cancelled, or closed while suspended because the client went away
                token.cancel("client disconnected")
                raise

        return body()

    def compressed(
        self, result: TranscodeResult, token: CancellationToken, url: str
    ) -> Optional[Response]:
        if self.committed:
            return self._suppressed("compressed")
        for name, value in result.headers().items():
            self._put(name, value)

        async def cleanup():
            result.close()

        response = ClosingStreamingResponse(
            self._stream(result.iter_chunks(token), token, url),
            cleanup=cleanup,
            status_code=200,
        )
        response.raw_headers = list(self.headers.raw)
        return self._commit(response, "compressed")

    def bypass(
        self, origin: OriginResponse, token: CancellationToken, url: str
    ) -> Optional[Response]:
        if self.committed:
            return self._suppressed("bypass")
        self._put(BYPASS_HEADER, "1")
        relayed = dict(origin.client_headers())
        for name in BYPASS_PASSTHROUGH_HEADERS:
            if name in relayed:
                self._put(name, relayed[name])
        if origin.content_encoded and "content-length" in self.headers:
            # The body is relayed decoded, the origin length no longer applies
            del self.headers["content-length"]

        response = ClosingStreamingResponse(
            self._stream(origin.iter_body(token), token, url),
            cleanup=origin.aclose,
            status_code=200,
        )
        response.raw_headers = list(self.headers.raw)
        return self._commit(response, "bypass")

    def redirect(self, url: str) -> Optional[Response]:
        if self.committed:
            return self._suppressed("redirect")
        for name in REDIRECT_STRIPPED_HEADERS:
            if name in self.headers:
                del self.headers[name]
        self.headers["location"] = encode_uri(url)
        self.headers["content-length"] = "0"

        response = Response(status_code=302)
        response.raw_headers = list(self.headers.raw)
        return self._commit(response, "redirect")

    def reject(self, status_code: int, message: str) -> Optional[Response]:
        if self.committed:
            return self._suppressed("rejected")
        response = Response(content=message, status_code=status_code, media_type="text/plain")
        return self._commit(response, "rejected")

    def terminate(self, error: BaseException) -> Optional[Response]:
        if self.committed:
            return self._suppressed("terminated")
        return self._commit(AbortedResponse(error), "terminated")
