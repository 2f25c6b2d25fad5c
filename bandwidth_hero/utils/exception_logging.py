"""
Utility functions for exception logging, particularly for errors that wrap a
lower level cause (httpx transport errors, Pillow decoder errors).
"""

import logging

# Guards against cyclic __cause__ chains
_MAX_CHAIN_DEPTH = 8


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.

    Args:
        obj: The object to convert to string

    Returns:
        A string representation of the object, falling back to safe alternatives
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            try:
                return f"<{type(obj).__name__} object (string conversion failed)>"
            except Exception:
                return "<object (all string conversions failed)>"


def format_exception_message(exception: BaseException) -> str:
    """
    Format an exception together with the chain of exceptions that caused it.

    ``TranscodeError("Failed to transcode ...")`` raised from an ``OSError``
    becomes ``TranscodeError: Failed to transcode ... <- OSError: cannot identify image file``.
    This function never raises.

    Args:
        exception: The exception to format

    Returns:
        A formatted string describing the exception and its causes
    """
    if exception is None:
        return "None"
    parts = []
    current = exception
    seen = set()
    try:
        while current is not None and id(current) not in seen and len(parts) < _MAX_CHAIN_DEPTH:
            seen.add(id(current))
            message = _safe_str(current)
            name = type(current).__name__
            parts.append(f"{name}: {message}" if message else name)
            current = current.__cause__ or current.__context__
        return " <- ".join(parts)
    except Exception:
        return f"<{type(exception).__name__} (formatting failed)>"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
    with_traceback: bool = False,
) -> None:
    """
    Log an exception with its cause chain on a single line.
    This function is designed to never throw exceptions itself, even when dealing with
    broken exception objects or logger failures.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Fetch]", "[Transcode]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
        with_traceback: Attach the traceback to the log record
    """
    safe_prefix = _safe_str(prefix) if prefix is not None else ""
    message = f"{safe_prefix} {format_exception_message(exception)}".strip()
    try:
        logger.log(
            level,
            message,
            exc_info=exception if (with_traceback and exception is not None) else False,
        )
    except Exception:
        try:
            logger.log(level, f"{safe_prefix} Exception (logging failed)")
        except Exception:
            # If all logging fails, give up silently
            pass
