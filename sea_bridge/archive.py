from __future__ import annotations

import asyncio
import codecs
import io

from .errors import DecodeError

try:
    import gzip
    import zlib
except ImportError:  # interpreter built without zlib
    gzip = None  # type: ignore[assignment]
    zlib = None  # type: ignore[assignment]

_CHUNK_SIZE = 64 * 1024
_BOM = "\ufeff"


def decode(data: bytes) -> str:
    """Decompress a gzip stream into text.

    Reads through ``GzipFile`` chunk by chunk into an incremental UTF-8 decoder,
    so the only full-size buffer is the resulting text. Concatenated gzip
    members are read as one stream.
    """
    if gzip is None:
        raise DecodeError(
            "gzip decompression is not available in this runtime",
            user_message="This runtime does not support gzip decompression",
        )
    if not data:
        raise DecodeError("Archive is empty")

    text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    parts: list[str] = []
    try:
        with gzip.GzipFile(fileobj=io.BytesIO(data), mode="rb") as fh:
            while True:
                chunk = fh.read(_CHUNK_SIZE)
                if not chunk:
                    break
                parts.append(text_decoder.decode(chunk))
    except (OSError, EOFError, zlib.error) as e:
        raise DecodeError(f"Not a valid gzip stream: {e}") from e
    parts.append(text_decoder.decode(b"", final=True))

    text = "".join(parts)
    if text.startswith(_BOM):
        text = text[1:]
    return text


async def decode_async(data: bytes) -> str:
    return await asyncio.to_thread(decode, data)
