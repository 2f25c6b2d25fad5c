import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "bandwidth-hero-proxy")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")

# Connect/response timeout for the origin fetch, in seconds
PROXY_TIMEOUT = float(os.getenv("PROXY_TIMEOUT", "10"))

TRANSCODE_WORKERS = int(os.getenv("TRANSCODE_WORKERS", "0")) or os.cpu_count() or 1
TRANSCODE_SPOOL_BYTES = int(os.getenv("TRANSCODE_SPOOL_BYTES", str(4 * 1024 * 1024)))
TRANSCODE_CHUNK_SIZE = int(os.getenv("TRANSCODE_CHUNK_SIZE", str(64 * 1024)))


def _parse_optional_int(raw: str):
    raw = (raw or "").strip()
    if not raw:
        return None
    return int(raw)


# Unset means Pillow's decompression bomb check is disabled
MAX_IMAGE_PIXELS = _parse_optional_int(os.getenv("MAX_IMAGE_PIXELS", ""))
LOAD_TRUNCATED_IMAGES = os.getenv("LOAD_TRUNCATED_IMAGES", "false").lower() == "true"
