"""Reusable byte buffers for reading daemon replies."""

from __future__ import annotations

import queue

_DEFAULT_MAX_IDLE = 64


class BufferPool:
    """Thread-safe pool of :class:`bytearray` buffers.

    The pool hands buffers back as they were released and never clears them.
    Borrowers must reset a buffer (``del buf[:]``) before reading into it.

    Args:
        max_idle: Number of released buffers kept for reuse.  Buffers
            released beyond that are dropped for the garbage collector.
    """

    def __init__(self, max_idle: int = _DEFAULT_MAX_IDLE) -> None:
        self._idle: queue.LifoQueue[bytearray] = queue.LifoQueue(maxsize=max_idle)

    def borrow(self) -> bytearray:
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            return bytearray()

    def release(self, buf: bytearray) -> None:
        try:
            self._idle.put_nowait(buf)
        except queue.Full:
            pass

    def __len__(self) -> int:
        return self._idle.qsize()
