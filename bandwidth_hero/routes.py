import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse, Response

from bandwidth_hero.proxy.cancellation import CancellationToken, watch_disconnect
from bandwidth_hero.proxy.pipeline import ProxyPipeline

router = APIRouter()

logger = logging.getLogger("uvicorn.error")

HEALTH_CHECK_BODY = "bandwidth-hero-proxy"


def get_pipeline(request: Request) -> ProxyPipeline:
    return request.app.state.pipeline


@router.get("/")
async def compress(
    request: Request,
    url: Optional[str] = Query(None, description="Percent-encoded URL of the resource"),
    jpeg: Optional[str] = Query(None, description="Any value selects JPEG instead of WebP"),
    bw: Optional[str] = Query(None, description="0 disables grayscale"),
    l: Optional[str] = Query(None, description="Encoder quality, defaults to 40"),  # noqa: E741
    pipeline: ProxyPipeline = Depends(get_pipeline),
) -> Response:
    if not url:
        return PlainTextResponse(HEALTH_CHECK_BODY)

    token = CancellationToken()
    client_host = request.client.host if request.client else None
    watcher = asyncio.create_task(watch_disconnect(request, token))
    try:
        return await pipeline.handle(
            url,
            jpeg=jpeg,
            bw=bw,
            quality=l,
            headers=request.headers,
            client_host=client_host,
            token=token,
        )
    finally:
        watcher.cancel()
