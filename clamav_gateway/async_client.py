"""Asynchronous TCP client for the ClamAV daemon (requires ``httpx`` for URL inputs)."""

from __future__ import annotations

import asyncio
import io
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
import structlog

from clamav_gateway import protocol
from clamav_gateway.buffers import BufferPool
from clamav_gateway.client import DEFAULT_MAX_SIZE
from clamav_gateway.connection import DaemonAddress, open_stream
from clamav_gateway.exceptions import (
    ClamAVError,
    ClamAVFileTooLargeError,
    ClamAVProtocolError,
    ClamAVSourceError,
    ClamAVTimeoutError,
)
from clamav_gateway.models import StreamVerdict
from clamav_gateway.sources import read_file

log = structlog.get_logger(__name__)

T = TypeVar("T")

_RECV_SIZE = 4096


class AsyncClamAVClient:
    """Asynchronous client for clamd's TCP protocol.

    Same contract as :class:`~clamav_gateway.client.ClamAVClient`.  Each
    operation runs under ``asyncio.wait_for`` with its deadline; when the
    deadline passes or the calling task is cancelled, the connection is
    closed on the way out.

    Args:
        hostname: clamd host.  Resolved once, here.
        port: clamd TCP port.
        timeout: Default seconds allowed per operation.
        max_size: Largest input, in bytes, that :meth:`check_filesize`
            accepts.
        client: Optional :class:`httpx.AsyncClient` used by
            :meth:`scan_file` for URL inputs.

    Example::

        async with AsyncClamAVClient("localhost", 3310) as client:
            clean = await client.scan(upload)
    """

    def __init__(
        self,
        hostname: str = "localhost",
        port: int = 3310,
        timeout: float = 10,
        max_size: int = DEFAULT_MAX_SIZE,
        client: httpx.AsyncClient | None = None,
        *,
        _address: DaemonAddress | None = None,
        _buffers: BufferPool | None = None,
    ) -> None:
        self.address = _address or DaemonAddress.resolve(hostname, port)
        self._timeout = timeout
        self._max_size = max_size
        self._buffers = _buffers or BufferPool()
        self._owns_client = client is None
        self._client = client

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def max_size(self) -> int:
        return self._max_size

    def replace(self, *, timeout: float | None = None, max_size: int | None = None) -> AsyncClamAVClient:
        """Return a client with new limits sharing this one's address and buffers."""
        return AsyncClamAVClient(
            self.address.host,
            self.address.port,
            timeout=self._timeout if timeout is None else timeout,
            max_size=self._max_size if max_size is None else max_size,
            client=self._client,
            _address=self.address,
            _buffers=self._buffers,
        )

    async def ping(self, timeout: float | None = None) -> bool:
        """Check whether clamd answers ``PONG``.  Never raises for daemon problems."""
        try:
            resp = await self._command(protocol.PING, timeout)
        except ClamAVError as exc:
            log.debug("ping failed", error=str(exc))
            return False
        log.debug("successfully read ping response", response=resp)
        return protocol.is_pong(resp)

    async def version(self, timeout: float | None = None) -> str:
        resp = await self._command(protocol.VERSION, timeout)
        log.debug("successfully read version response", response=resp)
        return resp

    async def stats(self, timeout: float | None = None) -> str:
        resp = await self._command(protocol.STATS, timeout)
        log.debug("successfully read stats response", response=resp)
        return resp

    async def reload(self, timeout: float | None = None) -> None:
        resp = await self._command(protocol.RELOAD, timeout)
        log.debug("successfully read reload response", response=resp)

    async def shutdown(self, timeout: float | None = None) -> None:
        """Ask clamd to terminate.  Failures are logged, not raised."""

        async def exchange(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await _send(writer, protocol.SHUTDOWN, "write command")

        try:
            await self._run(exchange, timeout)
        except ClamAVError as exc:
            log.warning("failed to write command to clamav", command="shutdown", error=str(exc))

    def check_filesize(self, n: int) -> bool:
        log.debug("checking file size", size=n, max=self._max_size)
        return not n > self._max_size

    async def scan(self, source: Any, timeout: float | None = None) -> bool:
        """Stream *source* to clamd and report whether it is clean.

        *source* may be a binary file object or anything with an async
        ``read(n)``, such as an uploaded file.
        """
        verdict = await self.scan_stream(source, timeout)
        return verdict.clean

    async def scan_stream(self, source: Any, timeout: float | None = None) -> StreamVerdict:
        async def exchange(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> tuple[int, str]:
            await _send(writer, protocol.INSTREAM, "write command")
            written = 0
            async for header, payload in protocol.aiter_frames(source):
                await _send(writer, header, "write chunk size")
                await _send(writer, payload, "write chunk")
                written += len(payload)
                log.debug("written to clamav", sent_bytes=written, chunk_size=len(payload))
            await _send(writer, protocol.TERMINATOR, "write termination")
            log.info("successfully sent file to clamav", sent_bytes=written)
            return written, await self._read_reply(reader)

        sent, resp = await self._run(exchange, timeout)
        log.info("successfully read response", response=resp)
        return StreamVerdict(verdict=protocol.classify(resp), reply=resp, sent_bytes=sent)

    async def scan_file(self, location: str, timeout: float | None = None) -> bool:
        """Scan a file given as an http(s) URL or a local path."""
        body = await self._load(location)
        log.debug("trying to scan file", filename=location, length=len(body))
        if not self.check_filesize(len(body)):
            raise ClamAVFileTooLargeError("file exceeded size limit")
        start = time.monotonic()
        clean = await self.scan(io.BytesIO(body), timeout)
        log.debug("scanned file", filename=location, elapsed_ms=int((time.monotonic() - start) * 1000))
        return clean

    async def close(self) -> None:
        """Close the underlying HTTP client if owned by this instance."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> AsyncClamAVClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run(
        self,
        exchange: Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[T]],
        timeout: float | None,
    ) -> T:
        limit = self._timeout if timeout is None else timeout

        async def session() -> T:
            reader, writer = await open_stream(self.address)
            try:
                return await exchange(reader, writer)
            finally:
                log.debug("closing connection", address=str(self.address))
                writer.close()

        try:
            return await asyncio.wait_for(session(), limit)
        except asyncio.TimeoutError as exc:
            raise ClamAVTimeoutError(f"operation exceeded {limit}s deadline") from exc

    async def _command(self, token: bytes, timeout: float | None) -> str:
        async def exchange(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> str:
            await _send(writer, token, "write command")
            return await self._read_reply(reader)

        return await self._run(exchange, timeout)

    async def _read_reply(self, reader: asyncio.StreamReader) -> str:
        buf = self._buffers.borrow()
        del buf[:]
        try:
            while True:
                try:
                    chunk = await reader.read(_RECV_SIZE)
                except OSError as exc:
                    raise ClamAVProtocolError(f"failed to read response: {exc}") from exc
                if not chunk:
                    break
                buf += chunk
            return protocol.decode_reply(buf)
        finally:
            self._buffers.release(buf)

    async def _load(self, location: str) -> bytes:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        try:
            return await _fetch(self._client, location, self._max_size)
        except (httpx.UnsupportedProtocol, httpx.InvalidURL):
            log.debug("location is not a url, reading local file", location=location)
            return await asyncio.to_thread(read_file, location, self._max_size)


async def _fetch(client: httpx.AsyncClient, url: str, limit: int) -> bytes:
    """Download *url*, stopping as soon as it grows past *limit*."""
    try:
        async with client.stream("GET", url) as resp:
            resp.raise_for_status()
            declared = resp.headers.get("Content-Length")
            if declared is not None and declared.isdigit() and int(declared) > limit:
                raise ClamAVFileTooLargeError(f"file exceeded size limit of {limit} bytes")
            body = bytearray()
            async for piece in resp.aiter_bytes():
                body += piece
                if len(body) > limit:
                    raise ClamAVFileTooLargeError(f"file exceeded size limit of {limit} bytes")
    except (httpx.UnsupportedProtocol, httpx.InvalidURL):
        raise
    except httpx.HTTPError as exc:
        raise ClamAVSourceError(f"failed to download {url}: {exc}") from exc
    return bytes(body)


async def _send(writer: asyncio.StreamWriter, data: bytes, step: str) -> None:
    try:
        writer.write(data)
        await writer.drain()
    except OSError as exc:
        raise ClamAVProtocolError(f"failed to {step}: {exc}") from exc
