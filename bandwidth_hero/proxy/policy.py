from bandwidth_hero.proxy.context import OutputFormat, RequestContext

MIN_COMPRESS_LENGTH = 1024
MIN_TRANSPARENT_COMPRESS_LENGTH = MIN_COMPRESS_LENGTH * 100


def _media_type(content_type: str) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def should_compress(
    origin_type: str,
    origin_size: int,
    output_format: OutputFormat,
    range_requested: bool = False,
) -> bool:
    """Decide whether an origin response is worth transcoding."""
    media_type = _media_type(origin_type)
    if not media_type.startswith("image"):
        return False
    if origin_size <= 0:
        return False
    # Byte ranges cannot be honored on re-encoded output
    if range_requested:
        return False
    if output_format is OutputFormat.WEBP and origin_size < MIN_COMPRESS_LENGTH:
        return False
    if (
        output_format is OutputFormat.JPEG
        and media_type.endswith(("png", "gif"))
        and origin_size < MIN_TRANSPARENT_COMPRESS_LENGTH
    ):
        return False
    return True


def should_compress_context(context: RequestContext, range_requested: bool = False) -> bool:
    return should_compress(
        context.origin_type,
        context.origin_size,
        context.output_format,
        range_requested,
    )
