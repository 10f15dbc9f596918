"""Per-operation TCP connections to clamd."""

from __future__ import annotations

import asyncio
import socket
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import structlog

from clamav_gateway.exceptions import (
    ClamAVConnectionError,
    ClamAVProtocolError,
    ClamAVTimeoutError,
)

log = structlog.get_logger(__name__)

_RECV_SIZE = 4096


@dataclass(frozen=True, slots=True)
class DaemonAddress:
    """A clamd endpoint, resolved once.

    Attributes:
        host: Hostname as configured.
        port: TCP port.
        family: Address family of the resolved endpoint.
        sockaddr: Address tuple passed to ``connect``.
    """

    host: str
    port: int
    family: int
    sockaddr: tuple[Any, ...]

    @classmethod
    def resolve(cls, host: str, port: int) -> DaemonAddress:
        """Resolve *host*:*port* to the first TCP endpoint.

        Raises:
            ClamAVConnectionError: If the name does not resolve.
        """
        try:
            infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError) as exc:
            raise ClamAVConnectionError(f"failed to resolve {host}:{port}: {exc}") from exc
        family, _, _, _, sockaddr = infos[0]
        return cls(host=host, port=port, family=family, sockaddr=sockaddr)

    @property
    def ip(self) -> str:
        return str(self.sockaddr[0])

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class Connection:
    """A socket bound to an absolute deadline.

    Every send and receive gets the time left until the deadline as its
    socket timeout, so a stalled daemon cannot hold the operation past it.
    """

    def __init__(self, sock: socket.socket, deadline: float) -> None:
        self._sock = sock
        self.deadline = deadline
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _arm(self) -> None:
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise ClamAVTimeoutError("connection deadline exceeded")
        self._sock.settimeout(remaining)

    def send(self, data: bytes, step: str = "write") -> None:
        """Send all of *data*, naming *step* in any error."""
        try:
            self._arm()
            self._sock.sendall(data)
        except TimeoutError as exc:
            raise ClamAVTimeoutError(f"failed to {step}: {exc}") from exc
        except OSError as exc:
            raise ClamAVProtocolError(f"failed to {step}: {exc}") from exc

    def read_into(self, buf: bytearray) -> None:
        """Append everything the daemon sends until it closes its side."""
        while True:
            try:
                self._arm()
                chunk = self._sock.recv(_RECV_SIZE)
            except TimeoutError as exc:
                raise ClamAVTimeoutError(f"failed to read response: {exc}") from exc
            except OSError as exc:
                raise ClamAVProtocolError(f"failed to read response: {exc}") from exc
            if not chunk:
                return
            buf += chunk

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._sock.close()


class ConnectionProvider:
    """Opens one fresh connection per operation; sockets are never pooled.

    Args:
        address: The resolved daemon address.
        timeout: Default seconds allowed per operation when the caller
            passes none.
    """

    def __init__(self, address: DaemonAddress, timeout: float) -> None:
        self.address = address
        self.timeout = timeout

    def deadline(self, timeout: float | None = None) -> float:
        return time.monotonic() + (self.timeout if timeout is None else timeout)

    @contextmanager
    def connect(self, timeout: float | None = None) -> Iterator[Connection]:
        """Yield a connection that is closed when the block exits, however it exits.

        Raises:
            ClamAVConnectionError: If the dial fails.
            ClamAVTimeoutError: If the dial does not finish before the deadline.
        """
        deadline = self.deadline(timeout)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ClamAVTimeoutError("failed to obtain connection: deadline exceeded")
        log.debug("connecting to clamav", address=str(self.address))
        sock = socket.socket(self.address.family, socket.SOCK_STREAM)
        try:
            sock.settimeout(remaining)
            sock.connect(self.address.sockaddr)
        except TimeoutError as exc:
            sock.close()
            raise ClamAVTimeoutError(f"failed to obtain connection: {exc}") from exc
        except OSError as exc:
            sock.close()
            raise ClamAVConnectionError(f"failed to obtain connection: {exc}") from exc

        conn = Connection(sock, deadline)
        try:
            yield conn
        finally:
            log.debug("closing connection", address=str(self.address))
            conn.close()


async def open_stream(
    address: DaemonAddress,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Dial *address* with asyncio streams.

    The caller bounds the dial and the exchange with a single
    ``asyncio.wait_for`` so the deadline covers both.
    """
    log.debug("connecting to clamav", address=str(address))
    try:
        return await asyncio.open_connection(address.ip, address.port, family=address.family)
    except OSError as exc:
        raise ClamAVConnectionError(f"failed to obtain connection: {exc}") from exc
