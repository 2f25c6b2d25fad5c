"""
Image transcoding for the compression proxy.

The origin body is pulled chunk by chunk into a spooled buffer (memory first,
disk beyond ``spool_max_bytes``) while the image header is probed as soon as
enough bytes have arrived. Once the body is complete the image is decoded,
capped to the WebP height limit, converted and encoded into a second spool
whose size becomes the response ``content-length``. The encoded bytes are then
streamed back in ``chunk_size`` pieces at the pace the client reads them.

All Pillow work runs on a process-wide thread pool so the event loop keeps
serving other requests while an image is being encoded.
"""

import asyncio
import logging
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from opentelemetry import trace
from PIL import Image, ImageFile

from bandwidth_hero.proxy.cancellation import CancellationToken
from bandwidth_hero.proxy.context import OutputFormat, RequestContext
from bandwidth_hero.proxy.errors import ProxyError, TranscodeError
from bandwidth_hero.vars import (
    LOAD_TRUNCATED_IMAGES,
    MAX_IMAGE_PIXELS,
    TRANSCODE_CHUNK_SIZE,
    TRANSCODE_SPOOL_BYTES,
    TRANSCODE_WORKERS,
)

logger = logging.getLogger("uvicorn.error")

# Largest dimension a WebP image can have
MAX_HEIGHT = 16383

_ALPHA_MODES = ("RGBA", "LA", "PA", "RGBa", "La")


class TranscodeState(str, Enum):
    FETCHING = "fetching"
    PROBING = "probing"
    RESIZING = "resizing"
    ENCODING = "encoding"
    STREAMING = "streaming"
    DONE = "done"
    ERRORED = "errored"


def _record_state(state: TranscodeState, url: str) -> None:
    logger.debug(f"[Transcode] {url}: {state.value}")
    trace.get_current_span().set_attribute("transcode.state", state.value)


@dataclass(frozen=True)
class TranscoderConfig:
    """Process-wide transcoder settings, applied once at startup."""

    workers: int = TRANSCODE_WORKERS
    max_image_pixels: Optional[int] = MAX_IMAGE_PIXELS
    load_truncated_images: bool = LOAD_TRUNCATED_IMAGES
    spool_max_bytes: int = TRANSCODE_SPOOL_BYTES
    chunk_size: int = TRANSCODE_CHUNK_SIZE


class _SpoolWriter:
    """
    File-like front for a spooled temporary file that hides ``fileno``.

    Pillow writes straight to the file descriptor when one is available, which
    would force the spool onto disk for every image.
    """

    def __init__(self, spool):
        self._spool = spool

    def write(self, data) -> int:
        return self._spool.write(data)

    def flush(self) -> None:
        self._spool.flush()

    def tell(self) -> int:
        return self._spool.tell()

    def seek(self, offset: int, whence: int = 0) -> int:
        return self._spool.seek(offset, whence)


def target_size(width: int, height: int) -> Tuple[int, int]:
    """Cap the height at :data:`MAX_HEIGHT`, scaling the width to keep the aspect ratio."""
    if height < MAX_HEIGHT:
        return width, height
    scaled_width = max(1, round(width * MAX_HEIGHT / height))
    return scaled_width, MAX_HEIGHT


def _has_alpha(image: Image.Image) -> bool:
    if image.mode in _ALPHA_MODES:
        return True
    return image.mode == "P" and "transparency" in image.info


def prepare_image(image: Image.Image, output_format: OutputFormat, grayscale: bool) -> Image.Image:
    """Convert ``image`` to a mode the target encoder accepts."""
    alpha = _has_alpha(image)
    if output_format is OutputFormat.JPEG:
        # JPEG has no alpha channel, transparency is dropped
        if grayscale:
            return image.convert("L")
        if image.mode not in ("RGB", "L"):
            return image.convert("RGB")
        return image

    if grayscale:
        if alpha:
            return image.convert("RGBA").convert("LA").convert("RGBA")
        return image.convert("L").convert("RGB")
    wanted = "RGBA" if alpha else "RGB"
    if image.mode != wanted:
        return image.convert(wanted)
    return image


class TranscodeResult:
    """Encoded image waiting to be streamed to the client."""

    def __init__(
        self,
        output_format: OutputFormat,
        size: int,
        original_size: int,
        spool,
        chunk_size: int = TRANSCODE_CHUNK_SIZE,
        width: int = 0,
        height: int = 0,
    ):
        self.output_format = output_format
        self.size = size
        self.original_size = original_size
        self.width = width
        self.height = height
        self.state = TranscodeState.ENCODING
        self._spool = spool
        self._chunk_size = chunk_size

    @property
    def content_type(self) -> str:
        return self.output_format.content_type

    @property
    def bytes_saved(self) -> int:
        # Negative when re-encoding made the image bigger
        return self.original_size - self.size

    def headers(self) -> Dict[str, str]:
        return {
            "content-type": self.content_type,
            "content-length": str(self.size),
            "x-original-size": str(self.original_size),
            "x-bytes-saved": str(self.bytes_saved),
        }

    async def iter_chunks(
        self, token: Optional[CancellationToken] = None
    ) -> AsyncIterator[bytes]:
        self.state = TranscodeState.STREAMING
        while True:
            if token is not None:
                token.raise_if_cancelled()
            chunk = await asyncio.to_thread(self._spool.read, self._chunk_size)
            if not chunk:
                break
            yield chunk
        self.state = TranscodeState.DONE

    def close(self) -> None:
        self._spool.close()


class ImageTranscoder:
    """Re-encodes origin images to WebP or JPEG."""

    def __init__(self, config: Optional[TranscoderConfig] = None):
        self.config = config or TranscoderConfig()
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def started(self) -> bool:
        return self._executor is not None

    def start(self) -> None:
        if self._executor is not None:
            return
        # Pillow keeps these as module globals
        Image.MAX_IMAGE_PIXELS = self.config.max_image_pixels
        ImageFile.LOAD_TRUNCATED_IMAGES = self.config.load_truncated_images
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.workers, thread_name_prefix="transcode"
        )
        logger.info(f"[Transcode] Worker pool started with {self.config.workers} workers")

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    async def _run(self, fn: Callable, *args):
        if self._executor is None:
            self.start()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    def _spool(self):
        return tempfile.SpooledTemporaryFile(max_size=self.config.spool_max_bytes)

    @staticmethod
    def _ingest(spool, chunk: bytes, probe: bool) -> Optional[Tuple[int, int]]:
        spool.seek(0, 2)
        spool.write(chunk)
        if not probe:
            return None
        try:
            with Image.open(spool) as image:
                return image.size
        except Exception:
            # Not enough bytes for the header yet
            return None

    def _decode(self, spool) -> Image.Image:
        spool.seek(0)
        image = Image.open(spool)
        image.load()
        return image

    def _convert(
        self, image: Image.Image, context: RequestContext, token: CancellationToken
    ) -> Image.Image:
        image = prepare_image(image, context.output_format, context.grayscale)
        size = target_size(*image.size)
        if size != image.size:
            token.raise_if_cancelled()
            image = image.resize(size, Image.Resampling.LANCZOS)
        return image

    def _encode(self, image: Image.Image, context: RequestContext, token: CancellationToken):
        token.raise_if_cancelled()
        output = self._spool()
        try:
            writer = _SpoolWriter(output)
            if context.output_format is OutputFormat.WEBP:
                # method=0 is libwebp's fastest preset
                image.save(writer, format="WEBP", quality=context.quality, method=0)
            else:
                image.save(writer, format="JPEG", quality=context.quality, optimize=False)
            size = output.tell()
            output.seek(0)
        except BaseException:
            output.close()
            raise
        return output, size

    async def transcode(
        self,
        body: AsyncIterator[bytes],
        context: RequestContext,
        token: Optional[CancellationToken] = None,
    ) -> TranscodeResult:
        """
        Consume ``body`` and return the re-encoded image.

        Raises:
            TranscodeError: the image could not be probed, decoded or encoded.
            UpstreamError: reading the origin body failed.
            RequestCancelled: ``token`` fired while transcoding.
        """
        token = token or CancellationToken()
        source = self._spool()
        dimensions: Optional[Tuple[int, int]] = None
        state = TranscodeState.FETCHING
        _record_state(state, context.url)
        try:
            async for chunk in body:
                token.raise_if_cancelled()
                probed = await self._run(self._ingest, source, chunk, dimensions is None)
                if probed is not None:
                    dimensions = probed
                    state = TranscodeState.PROBING
                    _record_state(state, context.url)
                    logger.debug(
                        f"[Transcode] Probed {context.url}: {dimensions[0]}x{dimensions[1]}"
                    )
            token.raise_if_cancelled()
            if dimensions is None:
                raise TranscodeError(f"Could not identify image data from {context.url}")

            image = await self._run(self._decode, source)
            if target_size(*image.size) != image.size:
                state = TranscodeState.RESIZING
                _record_state(state, context.url)
            image = await self._run(self._convert, image, context, token)

            state = TranscodeState.ENCODING
            _record_state(state, context.url)
            output, size = await self._run(self._encode, image, context, token)
        except ProxyError:
            _record_state(TranscodeState.ERRORED, context.url)
            raise
        except Exception as e:
            _record_state(TranscodeState.ERRORED, context.url)
            raise TranscodeError(
                f"Failed to transcode {context.url} during {state.value}: {e}"
            ) from e
        finally:
            source.close()

        result = TranscodeResult(
            output_format=context.output_format,
            size=size,
            original_size=context.origin_size,
            spool=output,
            chunk_size=self.config.chunk_size,
            width=image.width,
            height=image.height,
        )
        logger.debug(
            f"[Transcode] {context.url}: {context.origin_size} -> {size} bytes "
            f"({result.content_type}, {image.width}x{image.height})"
        )
        return result
