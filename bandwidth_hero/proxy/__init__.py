"""
Compression proxy pipeline.

Fetches a remote resource for the client and, when it is an image worth
shrinking, re-encodes it to a low quality WebP or JPEG (grayscale by default).
Everything else is relayed untouched, and failures send the client straight
to the origin.

Example usage with curl:
    curl -v "http://localhost:8000/?url=https%3A%2F%2Fexample.com%2Fphoto.png&l=40&bw=0"
"""

from .context import OutputFormat, RequestContext, build_request_context
from .errors import (
    InvalidURL,
    ProxyError,
    RequestCancelled,
    TranscodeError,
    UpstreamError,
    UpstreamRejected,
)
from .fetcher import OriginFetcher, OriginResponse
from .pipeline import ProxyPipeline
from .transcoder import ImageTranscoder, TranscodeResult, TranscoderConfig

__all__ = [
    "OutputFormat",
    "RequestContext",
    "build_request_context",
    "InvalidURL",
    "ProxyError",
    "RequestCancelled",
    "TranscodeError",
    "UpstreamError",
    "UpstreamRejected",
    "OriginFetcher",
    "OriginResponse",
    "ProxyPipeline",
    "ImageTranscoder",
    "TranscodeResult",
    "TranscoderConfig",
]
