"""Batch scanning of uploaded files."""

from __future__ import annotations

import os
import time
from collections.abc import Iterable
from typing import Any, Protocol

import structlog

from clamav_gateway.exceptions import ClamAVError
from clamav_gateway.models import BatchOutcome, Result, ResultStatus

log = structlog.get_logger(__name__)

SIZE_LIMIT_EXCEEDED = "file size limit exceeded"
VIRUS_FOUND = "file contains a virus"
NO_VIRUS = "file does not contain a virus"


class Upload(Protocol):
    """The parts of an uploaded file the orchestrator uses (``UploadFile`` fits)."""

    size: int | None
    file: Any

    async def read(self, size: int = -1) -> bytes: ...


class Scanner(Protocol):
    def check_filesize(self, n: int) -> bool: ...

    async def scan_stream(self, source: Any, timeout: float | None = None) -> Any: ...


def _retrieve(upload: Upload) -> int:
    """Return the size of *upload*, measuring it when the form parser did not."""
    fh = upload.file
    if fh is None:
        raise ValueError("uploaded file has no content")
    if upload.size is not None:
        return upload.size
    pos = fh.tell()
    size = fh.seek(0, os.SEEK_END) - pos
    fh.seek(pos)
    return size


async def scan_uploads(scanner: Scanner, uploads: Iterable[tuple[str, Upload]]) -> BatchOutcome:
    """Scan *uploads* one after another and collect per-file results.

    The batch stops at the first file that cannot be retrieved, is over the
    size limit, or fails to scan.  The HTTP status is that of the last
    recorded result: 400 for retrieval and size failures, 502 for scan
    failures, 200 otherwise (a detected virus is still a 200).
    """
    outcome = BatchOutcome()
    for key, upload in uploads:
        try:
            size = _retrieve(upload)
        except (OSError, ValueError) as exc:
            log.warning("failed to retrieve uploaded file", filename=key, error=str(exc))
            outcome.add(Result(ResultStatus.FAILED, str(exc), id=key), 400)
            return outcome

        if not scanner.check_filesize(size):
            log.warning("rejected file due to length", filename=key, length=size)
            outcome.add(Result(ResultStatus.FAILED, SIZE_LIMIT_EXCEEDED, id=key), 400)
            break

        start = time.monotonic()
        try:
            # UploadFile.read moves reads of disk-spooled uploads to a worker thread.
            verdict = await scanner.scan_stream(upload)
        except ClamAVError as exc:
            log.error("failed to scan file", filename=key, error=str(exc))
            outcome.add(Result(ResultStatus.FAILED, str(exc), id=key), 502)
            break

        log.info(
            "scanned file",
            filename=key,
            length=size,
            elapsed_ms=int((time.monotonic() - start) * 1000),
            result=verdict.clean,
        )
        if verdict.clean:
            outcome.add(Result(ResultStatus.SUCCESS, NO_VIRUS, id=key), 200)
        elif verdict.signature:
            outcome.add(Result(ResultStatus.VIRUS, f"{VIRUS_FOUND}: {verdict.signature}", id=key), 200)
        else:
            outcome.add(Result(ResultStatus.VIRUS, VIRUS_FOUND, id=key), 200)
    return outcome
