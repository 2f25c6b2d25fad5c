"""
Request pipeline of the compression proxy.

    build context -> loop check -> fetch origin -> compress?
        yes: transcode -> compressed response
        no:  bypass response
    any failure -> failures.handle_failure
"""

import logging
import time
from typing import Mapping, Optional

from fastapi.responses import Response
from opentelemetry import trace

from bandwidth_hero.proxy.cancellation import CancellationToken
from bandwidth_hero.proxy.context import (
    RequestContext,
    build_request_context,
    is_proxy_loop,
)
from bandwidth_hero.proxy.errors import InvalidURL, ProxyError
from bandwidth_hero.proxy.failures import handle_failure
from bandwidth_hero.proxy.fetcher import OriginFetcher
from bandwidth_hero.proxy.policy import should_compress_context
from bandwidth_hero.proxy.responses import ResponseWriter
from bandwidth_hero.proxy.transcoder import ImageTranscoder
from bandwidth_hero.utils import mask_url
from bandwidth_hero.utils.traced_requests import traced_request

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")


class ProxyPipeline:
    def __init__(self, fetcher: OriginFetcher, transcoder: ImageTranscoder):
        self.fetcher = fetcher
        self.transcoder = transcoder

    async def handle(
        self,
        url: str,
        jpeg: Optional[str],
        bw: Optional[str],
        quality: Optional[str],
        headers: Mapping[str, str],
        client_host: Optional[str],
        token: Optional[CancellationToken] = None,
    ) -> Response:
        """Serve one proxied request and return its only response."""
        writer = ResponseWriter()
        try:
            context = build_request_context(url, jpeg=jpeg, bw=bw, quality=quality)
        except InvalidURL as e:
            return handle_failure(e, writer)

        if is_proxy_loop(headers, client_host):
            logger.warning(
                f"[Proxy] Loop detected for {mask_url(context.url)}, redirecting to origin"
            )
            return writer.redirect(context.url)

        return await self.run(context, headers, client_host, writer, token or CancellationToken())

    async def run(
        self,
        context: RequestContext,
        headers: Mapping[str, str],
        client_host: Optional[str],
        writer: ResponseWriter,
        token: CancellationToken,
    ) -> Response:
        started = time.perf_counter()
        http_status = None
        http_error = None
        with traced_request(
            tracer,
            operation="proxy_request",
            url=context.url,
            start_message=f"[Proxy] Fetching {mask_url(context.url)}",
            extra_attrs={
                "proxy.format": context.output_format.value,
                "proxy.grayscale": context.grayscale,
                "proxy.quality": context.quality,
            },
        ) as span:
            origin = None
            try:
                try:
                    origin = await self.fetcher.fetch(context, headers, client_host, token)
                except ProxyError as e:
                    http_status = getattr(e, "status_code", None)
                    http_error = str(e)
                    span.set_attribute("proxy.error", type(e).__name__)
                    return handle_failure(e, writer, context.url)

                http_status = origin.status_code
                context = context.with_origin(origin.content_type, origin.content_length)
                span.set_attribute("proxy.status_code", origin.status_code)
                span.set_attribute("proxy.origin_type", context.origin_type)
                span.set_attribute("proxy.origin_size", context.origin_size)
                writer.stage(origin.client_headers())

                if not should_compress_context(context, range_requested="range" in headers):
                    return writer.bypass(origin, token, context.url)

                try:
                    result = await self.transcoder.transcode(
                        origin.iter_body(token), context, token
                    )
                except ProxyError as e:
                    http_error = str(e)
                    span.set_attribute("proxy.error", type(e).__name__)
                    return handle_failure(e, writer, context.url)
                finally:
                    await origin.aclose()

                span.set_attribute("proxy.output_size", result.size)
                span.set_attribute("proxy.bytes_saved", result.bytes_saved)
                return writer.compressed(result, token, context.url)
            except Exception as e:
                http_error = str(e)
                span.set_attribute("proxy.error", type(e).__name__)
                if origin is not None and not writer.committed:
                    await origin.aclose()
                return handle_failure(e, writer, context.url)
            finally:
                span.set_attribute("proxy.mode", writer.mode or "none")
                logger.info(
                    f"[Proxy] {mask_url(context.url)} mode={writer.mode} "
                    f"http_status={http_status} http_error={http_error} "
                    f"http_time={(time.perf_counter() - started) * 1000:.1f}ms"
                )
