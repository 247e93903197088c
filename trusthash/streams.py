"""
Size-limited readers for request and response bodies.

Both readers stop as soon as the running total passes the limit, so a
client or remote server can never make us buffer more than ``max_bytes``.
"""

from typing import AsyncIterable, Iterable

from .errors import SizeLimitExceeded

SIZE_LIMIT_MESSAGE = "Content size exceeds configured limit"


def parse_content_length(value: str | None) -> int | None:
    """Parse a Content-Length header; None when absent or malformed."""
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed >= 0 else None


def read_with_limit(chunks: Iterable[bytes], max_bytes: int, message: str = SIZE_LIMIT_MESSAGE) -> bytes:
    """Join chunks, raising SizeLimitExceeded once more than max_bytes arrive."""
    buf = bytearray()
    for chunk in chunks:
        if not chunk:
            continue
        if len(buf) + len(chunk) > max_bytes:
            raise SizeLimitExceeded(message)
        buf.extend(chunk)
    return bytes(buf)


async def aread_with_limit(
    chunks: AsyncIterable[bytes], max_bytes: int, message: str = SIZE_LIMIT_MESSAGE,
) -> bytes:
    """Async variant of read_with_limit for streamed request bodies."""
    buf = bytearray()
    async for chunk in chunks:
        if not chunk:
            continue
        if len(buf) + len(chunk) > max_bytes:
            raise SizeLimitExceeded(message)
        buf.extend(chunk)
    return bytes(buf)
