import logging
from typing import Optional

from fastapi.responses import Response

from bandwidth_hero.proxy.errors import (
    InvalidURL,
    ProxyError,
    RequestCancelled,
    TranscodeError,
    UpstreamError,
    UpstreamRejected,
)
from bandwidth_hero.proxy.responses import ResponseWriter
from bandwidth_hero.utils import mask_url
from bandwidth_hero.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")


def handle_failure(
    error: Exception, writer: ResponseWriter, url: Optional[str] = None
) -> Optional[Response]:
    """
    Turn a pipeline failure into the fallback response.

    The client is sent to the origin whenever that is still possible; a proxy
    error page is never produced. Returns ``None`` when a response has already
    been committed for this request.
    """
    if writer.committed:
        log_exception_with_details(
            logger, "[Proxy] Failure after the response was committed;", error
        )
        return writer.terminate(error)

    if isinstance(error, InvalidURL):
        logger.info(f"[Proxy] Rejecting request: {error}")
        return writer.reject(400, "Invalid URL")

    if isinstance(error, UpstreamRejected):
        logger.info(f"[Proxy] {error}, redirecting client to {mask_url(url or '')}")
        return writer.redirect(url)

    if isinstance(error, TranscodeError):
        log_exception_with_details(
            logger, "[Transcode] Falling back to redirect;", error, logging.WARNING
        )
        return writer.redirect(url)

    if isinstance(error, RequestCancelled):
        logger.debug(f"[Proxy] Request cancelled: {error}")
        return writer.terminate(error)

    if isinstance(error, UpstreamError):
        log_exception_with_details(logger, "[Fetch] Dropping client connection;", error)
        return writer.terminate(error)

    log_exception_with_details(logger, "[Proxy] Unexpected failure;", error, with_traceback=True)
    if url:
        return writer.redirect(url)
    return writer.terminate(error)
