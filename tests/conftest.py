"""Shared test fixtures, including an in-process fake clamd."""

from __future__ import annotations

import os
import socket
import socketserver
import struct
import threading
from collections.abc import Iterator

import pytest

from clamav_gateway.client import ClamAVClient

CLOSE = None
"""Reply marker: drop the connection without answering."""


class FakeClamd(socketserver.ThreadingTCPServer):
    """Speaks enough of clamd's TCP protocol to exercise the clients.

    ``replies`` maps a command (``"PING"``, ``"zINSTREAM"``, ...) to the bytes
    sent back before closing, or to :data:`CLOSE`.  For ``zINSTREAM`` with a
    reply of :data:`CLOSE`, the connection is reset right after the command,
    before any frame is read.  An empty reply closes cleanly after reading
    the frames.  Setting ``hang`` keeps connections open without
    answering until the fixture tears down.
    """

    daemon_threads = True
    allow_reuse_address = True

    def __init__(self) -> None:
        super().__init__(("127.0.0.1", 0), _Handler)
        self.replies: dict[str, bytes | None] = {
            "PING": b"PONG\n",
            "VERSION": b"ClamAV 1.3.0/27000/Mon Oct 14 08:00:00 2026\0",
            "RELOAD": b"RELOADING\n",
            "zSTATS": b"POOLS: 1\n\nSTATE: VALID PRIMARY\nTHREADS: live 1  idle 0 max 10\nEND\0",
            "zINSTREAM": b"stream: OK\0",
        }
        self.commands: list[str] = []
        self.streams: list[bytes] = []
        self.frames: list[list[int]] = []
        self.hang = False
        self.released = threading.Event()

    @property
    def port(self) -> int:
        return self.server_address[1]


class _Handler(socketserver.StreamRequestHandler):
    server: FakeClamd

    def handle(self) -> None:
        fake = self.server
        command = self._read_command()
        fake.commands.append(command)

        if fake.hang:
            fake.released.wait(10)
            return

        reply = fake.replies.get(command, b"UNKNOWN COMMAND\n")
        if command == "zINSTREAM":
            if reply is CLOSE:
                self._reset()
                return
            payload, sizes = self._read_frames()
            fake.streams.append(payload)
            fake.frames.append(sizes)
        elif command == "SHUTDOWN":
            return

        if reply:
            self.wfile.write(reply)
            self.wfile.flush()

    def _reset(self) -> None:
        # Zero linger turns close() into an RST, so the client sees a reset
        # rather than a clean end of stream.
        self.request.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        self.request.close()

    def _read_command(self) -> str:
        first = self.rfile.read(1)
        if first == b"z":
            raw = bytearray()
            while (b := self.rfile.read(1)) not in (b"\0", b""):
                raw += b
            return "z" + raw.decode()
        return (first + self.rfile.read1(64)).decode().strip()

    def _read_frames(self) -> tuple[bytes, list[int]]:
        payload = bytearray()
        sizes: list[int] = []
        while True:
            (n,) = struct.unpack(">I", self.rfile.read(4))
            if n == 0:
                return bytes(payload), sizes
            sizes.append(n)
            payload += self.rfile.read(n)


@pytest.fixture()
def clamd() -> Iterator[FakeClamd]:
    server = FakeClamd()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.released.set()
        server.shutdown()
        server.server_close()


@pytest.fixture()
def client(clamd: FakeClamd) -> ClamAVClient:
    return ClamAVClient("127.0.0.1", clamd.port, timeout=5, max_size=4096)


@pytest.fixture()
def random_bytes() -> bytes:
    return os.urandom(4096)


@pytest.fixture()
def eicar_bytes() -> bytes:
    """EICAR anti-malware test string (safe; every AV recognises it)."""
    return b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


@pytest.fixture()
def unused_port() -> int:
    """A localhost port with nothing listening on it."""
    with socketserver.TCPServer(("127.0.0.1", 0), socketserver.BaseRequestHandler) as srv:
        return srv.server_address[1]
