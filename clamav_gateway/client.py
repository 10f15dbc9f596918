"""Synchronous TCP client for the ClamAV daemon (clamd)."""

from __future__ import annotations

import time
from typing import BinaryIO

import requests
import structlog

from clamav_gateway import protocol
from clamav_gateway.buffers import BufferPool
from clamav_gateway.connection import Connection, ConnectionProvider, DaemonAddress
from clamav_gateway.exceptions import ClamAVError, ClamAVFileTooLargeError
from clamav_gateway.models import StreamVerdict
from clamav_gateway.sources import load_source

log = structlog.get_logger(__name__)

DEFAULT_MAX_SIZE = 25 * 1000 * 1000


class ClamAVClient:
    """Synchronous client for clamd's TCP protocol.

    Each call opens its own connection, bounded by *timeout* (or the per-call
    ``timeout`` argument), and closes it before returning.  Nothing is
    retried.

    Args:
        hostname: clamd host.  Resolved once, here.
        port: clamd TCP port.
        timeout: Default seconds allowed per operation.
        max_size: Largest input, in bytes, that :meth:`check_filesize`
            accepts.
        session: Optional :class:`requests.Session` used by
            :meth:`scan_file` for URL inputs.

    Raises:
        ClamAVConnectionError: If *hostname* does not resolve.

    Example::

        client = ClamAVClient("localhost", 3310)
        if client.ping():
            print(client.scan_file("/tmp/sample.txt"))
    """

    def __init__(
        self,
        hostname: str = "localhost",
        port: int = 3310,
        timeout: float = 10,
        max_size: int = DEFAULT_MAX_SIZE,
        session: requests.Session | None = None,
        *,
        _address: DaemonAddress | None = None,
        _buffers: BufferPool | None = None,
    ) -> None:
        address = _address or DaemonAddress.resolve(hostname, port)
        self._provider = ConnectionProvider(address, timeout)
        self._buffers = _buffers or BufferPool()
        self._session = session or requests.Session()
        self._max_size = max_size

    @property
    def address(self) -> DaemonAddress:
        return self._provider.address

    @property
    def timeout(self) -> float:
        return self._provider.timeout

    @property
    def max_size(self) -> int:
        return self._max_size

    def replace(self, *, timeout: float | None = None, max_size: int | None = None) -> ClamAVClient:
        """Return a client with new limits sharing this one's address and buffers.

        Configuration of an existing client never changes, so scans in
        flight keep the limits they started with.
        """
        return ClamAVClient(
            self.address.host,
            self.address.port,
            timeout=self.timeout if timeout is None else timeout,
            max_size=self._max_size if max_size is None else max_size,
            session=self._session,
            _address=self.address,
            _buffers=self._buffers,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def ping(self, timeout: float | None = None) -> bool:
        """Check whether clamd answers ``PONG``.

        Never raises for daemon problems: an unreachable daemon and an
        unexpected answer both return ``False``.
        """
        try:
            resp = self._command(protocol.PING, timeout)
        except ClamAVError as exc:
            log.debug("ping failed", error=str(exc))
            return False
        log.debug("successfully read ping response", response=resp)
        return protocol.is_pong(resp)

    def version(self, timeout: float | None = None) -> str:
        """Return the clamd version string.

        Raises:
            ClamAVConnectionError: If clamd is unreachable.
            ClamAVTimeoutError: If clamd does not answer before the deadline.
            ClamAVProtocolError: If the exchange fails midway.
        """
        resp = self._command(protocol.VERSION, timeout)
        log.debug("successfully read version response", response=resp)
        return resp

    def stats(self, timeout: float | None = None) -> str:
        """Return clamd's statistics block (scan queue, threads, memory)."""
        resp = self._command(protocol.STATS, timeout)
        log.debug("successfully read stats response", response=resp)
        return resp

    def reload(self, timeout: float | None = None) -> None:
        """Ask clamd to reload its signature databases."""
        resp = self._command(protocol.RELOAD, timeout)
        log.debug("successfully read reload response", response=resp)

    def shutdown(self, timeout: float | None = None) -> None:
        """Ask clamd to terminate.  Failures are logged, not raised."""
        try:
            with self._provider.connect(timeout) as conn:
                conn.send(protocol.SHUTDOWN, "write command")
        except ClamAVError as exc:
            log.warning("failed to write command to clamav", command="shutdown", error=str(exc))

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def check_filesize(self, n: int) -> bool:
        log.debug("checking file size", size=n, max=self._max_size)
        return not n > self._max_size

    def scan(self, source: BinaryIO, timeout: float | None = None) -> bool:
        """Stream *source* to clamd and report whether it is clean.

        Returns:
            ``True`` when clamd answers ``OK``; ``False`` for any other
            verdict, including a detected virus.

        Raises:
            ClamAVSourceError: If reading *source* fails.
            ClamAVProtocolError: If the exchange fails.
            ClamAVTimeoutError: If the deadline passes first.
        """
        return self.scan_stream(source, timeout).clean

    def scan_stream(self, source: BinaryIO, timeout: float | None = None) -> StreamVerdict:
        """Like :meth:`scan` but return the full :class:`StreamVerdict`."""
        with self._provider.connect(timeout) as conn:
            conn.send(protocol.INSTREAM, "write command")
            sent = self._send_frames(conn, source)
            log.info("successfully sent file to clamav", sent_bytes=sent)
            resp = self._read_reply(conn)

        log.info("successfully read response", response=resp)
        return StreamVerdict(verdict=protocol.classify(resp), reply=resp, sent_bytes=sent)

    def scan_file(self, location: str, timeout: float | None = None) -> bool:
        """Scan a file given as an http(s) URL or a local path.

        The whole input is loaded into memory first; loading stops as soon
        as it passes the size limit.

        Raises:
            ClamAVFileTooLargeError: If the input is larger than ``max_size``.
            ClamAVSourceError: If the input cannot be fetched or read.
        """
        size, stream = load_source(location, self._max_size, session=self._session, timeout=self.timeout)
        log.debug("trying to scan file", filename=location, length=size)
        if not self.check_filesize(size):
            raise ClamAVFileTooLargeError("file exceeded size limit")
        start = time.monotonic()
        clean = self.scan(stream, timeout)
        log.debug("scanned file", filename=location, elapsed_ms=int((time.monotonic() - start) * 1000))
        return clean

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _command(self, token: bytes, timeout: float | None) -> str:
        with self._provider.connect(timeout) as conn:
            conn.send(token, "write command")
            return self._read_reply(conn)

    def _send_frames(self, conn: Connection, source: BinaryIO) -> int:
        written = 0
        for header, payload in protocol.iter_frames(source):
            conn.send(header, "write chunk size")
            conn.send(payload, "write chunk")
            written += len(payload)
            log.debug("written to clamav", sent_bytes=written, chunk_size=len(payload))
        conn.send(protocol.TERMINATOR, "write termination")
        return written

    def _read_reply(self, conn: Connection) -> str:
        buf = self._buffers.borrow()
        del buf[:]
        try:
            conn.read_into(buf)
            return protocol.decode_reply(buf)
        finally:
            self._buffers.release(buf)
