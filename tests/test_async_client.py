"""Tests for the asynchronous clamd client (AsyncClamAVClient)."""

from __future__ import annotations

import asyncio
import io
from typing import TYPE_CHECKING

import httpx
import pytest
import respx

from clamav_gateway.async_client import AsyncClamAVClient
from clamav_gateway.exceptions import (
    ClamAVConnectionError,
    ClamAVFileTooLargeError,
    ClamAVProtocolError,
    ClamAVSourceError,
    ClamAVTimeoutError,
)
from clamav_gateway.models import ScanVerdict

from conftest import CLOSE

if TYPE_CHECKING:
    from conftest import FakeClamd

URL = "http://files.example.com/sample.bin"


class _AsyncUpload:
    def __init__(self, data: bytes) -> None:
        self._data = io.BytesIO(data)

    async def read(self, n: int = -1) -> bytes:
        return self._data.read(n)


@pytest.fixture()
def client(clamd: FakeClamd) -> AsyncClamAVClient:
    return AsyncClamAVClient("127.0.0.1", clamd.port, timeout=5, max_size=4096)


@pytest.fixture()
def unreachable(unused_port: int) -> AsyncClamAVClient:
    return AsyncClamAVClient("127.0.0.1", unused_port, timeout=1)


class TestPing:
    async def test_pong(self, client: AsyncClamAVClient):
        assert await client.ping() is True

    async def test_unexpected_reply(self, client: AsyncClamAVClient, clamd: FakeClamd):
        clamd.replies["PING"] = b"PANG"
        assert await client.ping() is False

    async def test_unreachable(self, unreachable: AsyncClamAVClient):
        assert await unreachable.ping() is False

    async def test_hanging_daemon(self, client: AsyncClamAVClient, clamd: FakeClamd):
        clamd.hang = True
        assert await client.ping(timeout=0.3) is False


class TestCommands:
    async def test_version(self, client: AsyncClamAVClient):
        assert await client.version() == "ClamAV 1.3.0/27000/Mon Oct 14 08:00:00 2026"

    async def test_stats(self, client: AsyncClamAVClient):
        assert (await client.stats()).startswith("POOLS: 1")

    async def test_reload(self, client: AsyncClamAVClient, clamd: FakeClamd):
        await client.reload()
        assert clamd.commands == ["RELOAD"]

    async def test_version_unreachable(self, unreachable: AsyncClamAVClient):
        with pytest.raises(ClamAVConnectionError):
            await unreachable.version()

    async def test_stats_timeout(self, client: AsyncClamAVClient, clamd: FakeClamd):
        clamd.hang = True
        with pytest.raises(ClamAVTimeoutError):
            await client.stats(timeout=0.3)

    async def test_shutdown_unreachable_does_not_raise(self, unreachable: AsyncClamAVClient):
        await unreachable.shutdown()


class TestScan:
    async def test_clean(self, client: AsyncClamAVClient, clamd: FakeClamd, random_bytes: bytes):
        assert await client.scan(io.BytesIO(random_bytes)) is True
        assert clamd.streams == [random_bytes]
        assert clamd.frames == [[2048, 2048]]

    async def test_async_source(self, client: AsyncClamAVClient, clamd: FakeClamd):
        assert await client.scan(_AsyncUpload(b"a" * 2500)) is True
        assert clamd.frames == [[2048, 452]]

    async def test_virus(self, client: AsyncClamAVClient, clamd: FakeClamd, eicar_bytes: bytes):
        clamd.replies["zINSTREAM"] = b"stream: Win.Test.EICAR_HDB-1 FOUND\0"
        verdict = await client.scan_stream(io.BytesIO(eicar_bytes))
        assert verdict.verdict is ScanVerdict.INFECTED
        assert verdict.clean is False
        assert verdict.signature == "Win.Test.EICAR_HDB-1"

    async def test_daemon_closes_without_reply(self, client: AsyncClamAVClient, clamd: FakeClamd, random_bytes: bytes):
        clamd.replies["zINSTREAM"] = CLOSE
        with pytest.raises(ClamAVProtocolError):
            await client.scan(io.BytesIO(random_bytes))

    async def test_daemon_reads_but_sends_nothing(self, client: AsyncClamAVClient, clamd: FakeClamd):
        clamd.replies["zINSTREAM"] = b""
        verdict = await client.scan_stream(io.BytesIO(b"data"))
        assert verdict.clean is False
        assert verdict.verdict is ScanVerdict.ERROR
        assert clamd.streams == [b"data"]

    async def test_timeout(self, client: AsyncClamAVClient, clamd: FakeClamd):
        clamd.hang = True
        with pytest.raises(ClamAVTimeoutError):
            await client.scan(io.BytesIO(b"data"), timeout=0.3)

    async def test_cancellation_propagates(self, client: AsyncClamAVClient, clamd: FakeClamd):
        clamd.hang = True
        task = asyncio.ensure_future(client.scan(io.BytesIO(b"data")))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    async def test_check_filesize(self, client: AsyncClamAVClient):
        assert client.check_filesize(4096) is True
        assert client.check_filesize(4097) is False

    async def test_replace(self, client: AsyncClamAVClient):
        other = client.replace(max_size=1)
        assert other.max_size == 1
        assert other.address is client.address
        assert client.max_size == 4096


class TestScanFile:
    async def test_local_file(self, client: AsyncClamAVClient, clamd: FakeClamd, tmp_path):
        f = tmp_path / "sample.txt"
        f.write_bytes(b"hello clamav")
        async with client:
            assert await client.scan_file(str(f)) is True
        assert clamd.streams == [b"hello clamav"]

    async def test_local_file_too_large(self, client: AsyncClamAVClient, clamd: FakeClamd, tmp_path):
        f = tmp_path / "big.bin"
        f.write_bytes(b"x" * 5000)
        async with client:
            with pytest.raises(ClamAVFileTooLargeError):
                await client.scan_file(str(f))
        assert clamd.commands == []

    @respx.mock
    async def test_url(self, client: AsyncClamAVClient, clamd: FakeClamd):
        respx.get(URL).respond(content=b"remote content")
        async with client:
            assert await client.scan_file(URL) is True
        assert clamd.streams == [b"remote content"]

    @respx.mock
    async def test_url_too_large(self, client: AsyncClamAVClient, clamd: FakeClamd):
        respx.get(URL).respond(content=b"x" * 5000)
        async with client:
            with pytest.raises(ClamAVFileTooLargeError):
                await client.scan_file(URL)
        assert clamd.commands == []

    @respx.mock
    async def test_url_declared_length_over_limit(self, client: AsyncClamAVClient, clamd: FakeClamd):
        route = respx.get(URL).respond(content=b"small", headers={"Content-Length": "5000"})
        async with client:
            with pytest.raises(ClamAVFileTooLargeError):
                await client.scan_file(URL)
        assert route.called
        assert clamd.commands == []

    @respx.mock
    async def test_url_connect_error(self, client: AsyncClamAVClient):
        respx.get(URL).mock(side_effect=httpx.ConnectError("refused"))
        async with client:
            with pytest.raises(ClamAVSourceError):
                await client.scan_file(URL)

    async def test_uses_given_http_client(self, clamd: FakeClamd):
        http = httpx.AsyncClient()
        c = AsyncClamAVClient("127.0.0.1", clamd.port, client=http)
        await c.close()
        assert http.is_closed is False
        await http.aclose()
