"""
Tests for the client-facing responses.

Responses are driven through a minimal ASGI harness so the exact messages
sent to the server can be inspected.
"""

import asyncio
import gzip
import tempfile

import httpx
import pytest

from bandwidth_hero.proxy.cancellation import CancellationToken
from bandwidth_hero.proxy.context import OutputFormat
from bandwidth_hero.proxy.errors import UpstreamError
from bandwidth_hero.proxy.fetcher import OriginResponse
from bandwidth_hero.proxy.responses import AbortedResponse, ResponseWriter, encode_uri
from bandwidth_hero.proxy.transcoder import TranscodeResult

URL = "http://origin.test/some image.png?size=large"


def make_result(payload: bytes, original_size: int) -> TranscodeResult:
    spool = tempfile.SpooledTemporaryFile()
    spool.write(payload)
    spool.seek(0)
    return TranscodeResult(OutputFormat.WEBP, len(payload), original_size, spool, chunk_size=3)


def make_origin(status=200, headers=None, content=b"origin bytes") -> OriginResponse:
    return OriginResponse(httpx.Response(status, headers=headers or {}, content=content))


class TestEncodeUri:
    def test_reserved_characters_are_kept(self):
        assert encode_uri("http://a.test/x?y=1&z=2#f") == "http://a.test/x?y=1&z=2#f"

    def test_spaces_and_unicode_are_encoded(self):
        assert encode_uri("http://a.test/ä b") == "http://a.test/%C3%A4%20b"


class TestRedirect:
    @pytest.mark.asyncio
    async def test_redirect_to_origin(self, run_asgi):
        writer = ResponseWriter()
        writer.stage(
            [
                ("cache-control", "max-age=600"),
                ("expires", "Thu, 01 Jan 2099 00:00:00 GMT"),
                ("date", "Mon, 01 Jan 2024 00:00:00 GMT"),
                ("etag", '"abc"'),
                ("x-custom", "kept"),
            ]
        )

        status, headers, body, error = await run_asgi(writer.redirect(URL))

        assert error is None
        assert status == 302
        assert headers["location"] == encode_uri(URL)
        assert headers["content-length"] == "0"
        assert body == b""
        for name in ("cache-control", "expires", "date", "etag"):
            assert name not in headers
        assert headers["x-custom"] == "kept"
        assert writer.mode == "redirect"


class TestCompressed:
    @pytest.mark.asyncio
    async def test_streams_result_with_size_headers(self, run_asgi):
        writer = ResponseWriter()
        writer.stage([("content-type", "image/png"), ("content-length", "5000")])
        result = make_result(b"0123456789", original_size=5000)

        response = writer.compressed(result, CancellationToken(), URL)
        status, headers, body, error = await run_asgi(response)

        assert error is None
        assert status == 200
        assert body == b"0123456789"
        assert headers["content-type"] == "image/webp"
        assert headers["content-length"] == "10"
        assert headers["x-original-size"] == "5000"
        assert headers["x-bytes-saved"] == "4990"
        assert [k for k, _ in response.raw_headers].count(b"content-length") == 1


class TestBypass:
    @pytest.mark.asyncio
    async def test_relays_origin_bytes(self, run_asgi):
        origin = make_origin(
            headers={"content-type": "text/html", "accept-ranges": "bytes"},
            content=b"<html>hello</html>",
        )
        writer = ResponseWriter()
        writer.stage(origin.client_headers())

        status, headers, body, error = await run_asgi(
            writer.bypass(origin, CancellationToken(), URL)
        )

        assert error is None
        assert status == 200
        assert body == b"<html>hello</html>"
        assert headers["x-proxy-bypass"] == "1"
        assert headers["content-type"] == "text/html"
        assert headers["content-length"] == str(len(b"<html>hello</html>"))
        assert headers["accept-ranges"] == "bytes"
        assert headers["content-encoding"] == "identity"

    @pytest.mark.asyncio
    async def test_decoded_body_drops_origin_length(self, run_asgi):
        origin = make_origin(
            headers={"content-type": "text/plain", "content-encoding": "gzip"},
            content=gzip.compress(b"plain text body"),
        )
        writer = ResponseWriter()
        writer.stage(origin.client_headers())

        _, headers, body, _ = await run_asgi(writer.bypass(origin, CancellationToken(), URL))

        assert body == b"plain text body"
        assert "content-length" not in headers
        assert headers["content-encoding"] == "identity"

    @pytest.mark.asyncio
    async def test_non_latin1_header_bytes_are_relayed(self, run_asgi):
        content_type = "text/html; name=日".encode("utf-8")
        origin = OriginResponse(
            httpx.Response(200, headers=[(b"content-type", content_type)], content=b"<p></p>")
        )
        writer = ResponseWriter()
        writer.stage(origin.client_headers())

        response = writer.bypass(origin, CancellationToken(), URL)
        status, _, body, error = await run_asgi(response)

        assert error is None
        assert status == 200
        assert (b"content-type", content_type) in response.raw_headers
        assert body == b"<p></p>"


class TestStage:
    def test_unencodable_header_is_dropped(self):
        writer = ResponseWriter()

        writer.stage([("x-name", "日本"), ("x-kept", "yes")])

        assert "x-name" not in writer.headers
        assert writer.headers["x-kept"] == "yes"


class TestClientGoesAway:
    """A client that disconnects mid-stream releases the origin and cancels the request."""

    @staticmethod
    def slow_origin():
        async def body():
            yield b"first chunk"
            await asyncio.sleep(5)
            yield b"never sent"

        return httpx.Response(200, headers={"content-type": "text/plain"}, content=body())

    @staticmethod
    async def receive():
        await asyncio.Event().wait()

    @pytest.mark.asyncio
    async def test_send_failure_mid_body(self):
        upstream = self.slow_origin()
        origin = OriginResponse(upstream)
        token = CancellationToken()
        response = ResponseWriter().bypass(origin, token, URL)

        async def send(message):
            if message["type"] == "http.response.body" and message.get("body"):
                raise OSError("connection reset by peer")

        with pytest.raises(Exception) as exc_info:
            await asyncio.wait_for(
                response({"type": "http", "method": "GET"}, self.receive, send), 2
            )

        assert not isinstance(exc_info.value, asyncio.TimeoutError)
        assert token.cancelled is True
        assert token.reason == "client disconnected"
        assert upstream.is_closed is True

    @pytest.mark.asyncio
    async def test_send_failure_before_body(self):
        upstream = self.slow_origin()
        response = ResponseWriter().bypass(OriginResponse(upstream), CancellationToken(), URL)

        async def send(message):
            raise OSError("connection reset by peer")

        with pytest.raises(Exception):
            await asyncio.wait_for(
                response({"type": "http", "method": "GET"}, self.receive, send), 2
            )

        assert upstream.is_closed is True


class TestSingleResponse:
    """Only the first terminal response of a request is ever produced."""

    def test_redirect_after_bypass_is_suppressed(self):
        writer = ResponseWriter()
        first = writer.bypass(make_origin(), CancellationToken(), URL)

        assert first is not None
        assert writer.redirect(URL) is None
        assert "location" not in writer.headers
        assert writer.mode == "bypass"

    def test_everything_after_redirect_is_suppressed(self):
        writer = ResponseWriter()
        assert writer.redirect(URL) is not None

        assert writer.redirect(URL) is None
        assert writer.reject(400, "Invalid URL") is None
        assert writer.terminate(UpstreamError("late")) is None
        assert writer.compressed(make_result(b"x", 1), CancellationToken(), URL) is None
        assert writer.mode == "redirect"


class TestTerminate:
    @pytest.mark.asyncio
    async def test_aborted_response_raises_after_start(self, run_asgi):
        error = UpstreamError("connect failed")
        writer = ResponseWriter()

        response = writer.terminate(error)
        status, headers, body, raised = await run_asgi(response)

        assert isinstance(response, AbortedResponse)
        assert raised is error
        assert status == 502
        assert body == b""
        assert headers["connection"] == "close"
        assert writer.mode == "terminated"


class TestReject:
    @pytest.mark.asyncio
    async def test_plain_error(self, run_asgi):
        status, _, body, _ = await run_asgi(ResponseWriter().reject(400, "Invalid URL"))

        assert status == 400
        assert body == b"Invalid URL"
