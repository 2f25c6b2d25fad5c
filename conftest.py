# Ensure tests import the package from this checkout first, whether or not it
# has been installed, so `import bandwidth_hero.*` behaves consistently.
import asyncio
import io
import os
import random
import sys

import httpx
import pytest
from PIL import Image

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)


def make_image_bytes(
    fmt: str = "PNG",
    size=(64, 48),
    mode: str = "RGB",
    noise: bool = True,
    seed: int = 7,
) -> bytes:
    """Encode a test image. Noise keeps PNGs from compressing to almost nothing."""
    if noise:
        channels = len(Image.new(mode, (1, 1)).getbands())
        data = random.Random(seed).randbytes(size[0] * size[1] * channels)
        image = Image.frombytes(mode, size, data)
    else:
        image = Image.new(mode, size, color=0)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def image_bytes():
    """Factory fixture producing encoded test images."""
    return make_image_bytes


@pytest.fixture
def origin_client():
    """Create an httpx client whose requests are answered by ``handler``."""

    def _create(handler) -> httpx.AsyncClient:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), follow_redirects=False
        )
        return client

    return _create


async def _run_asgi(response):
    messages = []

    async def receive():
        await asyncio.Event().wait()

    async def send(message):
        messages.append(message)

    error = None
    try:
        await response({"type": "http", "method": "GET"}, receive, send)
    except Exception as e:
        error = e

    start = next(m for m in messages if m["type"] == "http.response.start")
    body = b"".join(m.get("body", b"") for m in messages if m["type"] == "http.response.body")
    headers = {k.decode("latin-1"): v.decode("latin-1") for k, v in start["headers"]}
    return start["status"], headers, body, error


@pytest.fixture
def run_asgi():
    """Drive an ASGI response and return (status, headers, body, raised exception)."""
    return _run_asgi
