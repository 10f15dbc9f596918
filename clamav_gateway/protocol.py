"""clamd wire protocol: command tokens, ``INSTREAM`` framing and verdicts.

See ``clamd(8)`` for the daemon side.  Everything here is pure; the clients
own the sockets.
"""

from __future__ import annotations

import struct
from collections.abc import AsyncIterator, Iterator
from inspect import isawaitable
from typing import Any, BinaryIO

from clamav_gateway.exceptions import ClamAVSourceError
from clamav_gateway.models import ScanVerdict

CHUNK_SIZE = 2048

PING = b"PING"
VERSION = b"VERSION"
RELOAD = b"RELOAD"
SHUTDOWN = b"SHUTDOWN"
STATS = b"zSTATS\0"
INSTREAM = b"zINSTREAM\0"

TERMINATOR = b"\0\0\0\0"

_LENGTH = struct.Struct(">I")


def frame_header(n: int) -> bytes:
    """Return the 4-byte big-endian length prefix for an *n*-byte payload."""
    return _LENGTH.pack(n)


def iter_frames(source: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[tuple[bytes, bytes]]:
    """Yield ``(length_prefix, payload)`` pairs until *source* is exhausted.

    Each payload is exactly what one ``read`` returned, so the prefix always
    matches the bytes that follow it.  The empty read that signals end of
    input produces no frame.

    Raises:
        ClamAVSourceError: If reading from *source* fails.
    """
    while True:
        try:
            piece = source.read(chunk_size)
        except OSError as exc:
            raise ClamAVSourceError(f"failed to read chunk: {exc}") from exc
        if not piece:
            return
        yield frame_header(len(piece)), bytes(piece)


async def aiter_frames(source: Any, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[tuple[bytes, bytes]]:
    """Async variant of :func:`iter_frames`.

    *source* may have a plain ``read`` (``BytesIO``, an open file) or a
    coroutine ``read`` such as Starlette's ``UploadFile``.
    """
    while True:
        try:
            piece = source.read(chunk_size)
            if isawaitable(piece):
                piece = await piece
        except OSError as exc:
            raise ClamAVSourceError(f"failed to read chunk: {exc}") from exc
        if not piece:
            return
        yield frame_header(len(piece)), bytes(piece)


def decode_reply(raw: bytes | bytearray) -> str:
    """Strip NUL delimiters and surrounding whitespace from a reply."""
    return bytes(raw).strip(b"\0").decode("utf-8", errors="replace").strip()


def is_pong(reply: str) -> bool:
    return reply == "PONG"


def classify(reply: str) -> ScanVerdict:
    """Classify a decoded ``INSTREAM`` reply.

    ``OK`` anywhere in the reply means clean.  Otherwise ``FOUND`` means
    infected, and any other text (``INSTREAM size limit exceeded. ERROR``,
    ``FAIL``, ...) is an error verdict.  Both are "not clean".
    """
    if "OK" in reply:
        return ScanVerdict.CLEAN
    if "FOUND" in reply:
        return ScanVerdict.INFECTED
    return ScanVerdict.ERROR
