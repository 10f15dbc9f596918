"""Loading scan inputs named by a URL or a local path."""

from __future__ import annotations

import io
from pathlib import Path

import requests
import structlog

from clamav_gateway.exceptions import ClamAVFileTooLargeError, ClamAVSourceError

log = structlog.get_logger(__name__)

_FETCH_CHUNK = 64 * 1024

# requests raises these when the location is not an http(s) URL at all.
NOT_A_URL = (requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema, requests.exceptions.InvalidURL)


def _too_large(limit: int) -> ClamAVFileTooLargeError:
    return ClamAVFileTooLargeError(f"file exceeded size limit of {limit} bytes")


def fetch_url(url: str, limit: int, session: requests.Session | None = None, timeout: float = 300) -> bytes:
    """Download *url* into memory, stopping as soon as it grows past *limit*.

    Raises:
        requests.exceptions.MissingSchema: And the other ``NOT_A_URL``
            errors, untouched, when *url* is not an http(s) URL.
        ClamAVSourceError: If the download fails.
        ClamAVFileTooLargeError: If the body is larger than *limit*.
    """
    if session is None:
        with requests.Session() as http:
            return fetch_url(url, limit, session=http, timeout=timeout)
    try:
        with session.get(url, stream=True, timeout=timeout) as resp:
            resp.raise_for_status()
            declared = resp.headers.get("Content-Length")
            if declared is not None and declared.isdigit() and int(declared) > limit:
                raise _too_large(limit)
            body = bytearray()
            for piece in resp.iter_content(_FETCH_CHUNK):
                body += piece
                if len(body) > limit:
                    raise _too_large(limit)
    except NOT_A_URL:
        raise
    except requests.RequestException as exc:
        raise ClamAVSourceError(f"failed to download {url}: {exc}") from exc
    return bytes(body)


def read_file(path: str | Path, limit: int) -> bytes:
    """Read a local file, reading at most ``limit + 1`` bytes.

    Raises:
        ClamAVSourceError: If the file cannot be opened or read.
        ClamAVFileTooLargeError: If the file is larger than *limit*.
    """
    try:
        with open(path, "rb") as fh:
            body = fh.read(limit + 1)
    except OSError as exc:
        raise ClamAVSourceError(f"failed to read {path}: {exc}") from exc
    if len(body) > limit:
        raise _too_large(limit)
    return body


def load_source(
    location: str,
    limit: int,
    session: requests.Session | None = None,
    timeout: float = 300,
) -> tuple[int, io.BytesIO]:
    """Load *location* fully into memory.

    *location* is tried as a URL first; when it is not one, it is read as a
    local file.

    Returns:
        The body size and a stream positioned at its start.
    """
    try:
        body = fetch_url(location, limit, session=session, timeout=timeout)
    except NOT_A_URL:
        log.debug("location is not a url, reading local file", location=location)
        body = read_file(location, limit)
    return len(body), io.BytesIO(body)
