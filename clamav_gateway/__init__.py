"""ClamAV gateway: a clamd TCP client and an HTTP front for it."""

from clamav_gateway.buffers import BufferPool
from clamav_gateway.client import ClamAVClient
from clamav_gateway.exceptions import (
    ClamAVConnectionError,
    ClamAVError,
    ClamAVFileTooLargeError,
    ClamAVProtocolError,
    ClamAVSourceError,
    ClamAVTimeoutError,
)
from clamav_gateway.models import Result, ResultStatus, ScanVerdict, StreamVerdict

__all__ = [
    "ClamAVClient",
    "AsyncClamAVClient",
    "BufferPool",
    "create_app",
    "Result",
    "ResultStatus",
    "ScanVerdict",
    "StreamVerdict",
    "ClamAVError",
    "ClamAVConnectionError",
    "ClamAVTimeoutError",
    "ClamAVProtocolError",
    "ClamAVSourceError",
    "ClamAVFileTooLargeError",
]


def __getattr__(name: str) -> object:
    """Lazy-import the async client and the app so ``httpx`` / ``fastapi`` are optional at import time."""
    if name == "AsyncClamAVClient":
        from clamav_gateway.async_client import AsyncClamAVClient

        return AsyncClamAVClient
    if name == "create_app":
        from clamav_gateway.api import create_app

        return create_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
