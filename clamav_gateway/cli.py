"""Command line entry point: one-shot clamd operations or the HTTP API."""

from __future__ import annotations

import argparse
import sys
import time
from collections.abc import Sequence

import structlog

from clamav_gateway.client import ClamAVClient
from clamav_gateway.config import Settings
from clamav_gateway.exceptions import ClamAVError
from clamav_gateway.logging import LEVELS, configure_logging

log = structlog.get_logger(__name__)


def parse_args(argv: Sequence[str] | None = None, settings: Settings | None = None) -> argparse.Namespace:
    """Parse CLI arguments; defaults come from *settings* (``CLAMAV_*`` env)."""
    s = settings or Settings()
    p = argparse.ArgumentParser(prog="clamav-gateway", description="Talk to clamd directly or serve it over HTTP.")

    daemon = p.add_argument_group("clamd")
    daemon.add_argument("--hostname", default=s.hostname, help="the hostname of clamd")
    daemon.add_argument("--port", type=int, default=s.port, help="the port of clamd")
    daemon.add_argument("--timeout", type=float, default=s.timeout, help="clamd connection timeout in seconds")
    daemon.add_argument("--maxsize", type=int, default=s.max_size_mb, help="file size limit in MB")

    p.add_argument("--loglevel", choices=LEVELS, default=s.log_level, help="log level of the application")
    p.add_argument("--log-format", choices=("json", "console"), default=s.log_format)

    ops = p.add_argument_group("one-shot operations")
    ops.add_argument("--ping", action=argparse.BooleanOptionalAction, default=True, help="ping clamd")
    ops.add_argument("--version", action="store_true", help="print the clamd version")
    ops.add_argument("--stats", action="store_true", help="get stats about the scan queue")
    ops.add_argument("--reload", action="store_true", help="reload the clamd signature databases")
    ops.add_argument("--file", default="", help="the file (local path or http(s) URL) to scan")
    ops.add_argument("--shutdown", action="store_true", help="shut clamd down")

    api = p.add_argument_group("api")
    api.add_argument("--api", action="store_true", help="start the API")
    api.add_argument("--addr", default=s.addr, help="the address of the API")
    api.add_argument("--prefix", default=s.prefix, help="the path prefix of the API")
    api.add_argument("--tls", action="store_true", default=s.tls, help="enable TLS on the API")
    api.add_argument("--pem", default=s.pem_file, help="PEM certificate for TLS; self-signed when empty")
    api.add_argument("--key", default=s.key_file, help="PEM private key, when not inside --pem")
    api.add_argument(
        "--p12",
        default=s.p12_file,
        help="PKCS#12 bundle for TLS, used when --pem is empty; password from P12_PASSWORD",
    )
    return p.parse_args(argv)


def run_commands(client: ClamAVClient, args: argparse.Namespace) -> int:
    """Run the requested one-shot operations in a fixed order.

    Returns:
        The process exit code: 1 on the first failure or detected virus.
    """
    if args.ping and not client.ping():
        log.error("failed to ping clamav", address=str(client.address))
        return 1

    try:
        if args.version:
            log.info("version", version=client.version())
        if args.stats:
            log.info("stats", stats=client.stats())
        if args.reload:
            client.reload()
            log.info("triggered reload")
    except ClamAVError as exc:
        log.error("command failed", error=str(exc))
        return 1

    if args.file:
        start = time.monotonic()
        log.info("scanning file", file=args.file)
        try:
            clean = client.scan_file(args.file)
        except ClamAVError as exc:
            log.error("failed to scan file", file=args.file, error=str(exc), elapsed_ms=_since(start))
            return 1
        if not clean:
            log.warning("virus found", file=args.file, elapsed_ms=_since(start))
            return 1
        log.info("successfully scanned file", file=args.file, elapsed_ms=_since(start))

    if args.shutdown:
        client.shutdown()
    return 0


def serve(args: argparse.Namespace) -> None:
    import uvicorn

    from clamav_gateway.api import create_app
    from clamav_gateway.tls import server_tls

    settings = Settings(
        hostname=args.hostname,
        port=args.port,
        timeout=args.timeout,
        max_size_mb=args.maxsize,
        addr=args.addr,
        prefix=args.prefix,
        tls=args.tls,
        pem_file=args.pem,
        key_file=args.key,
        p12_file=args.p12,
        log_level=args.loglevel,
        log_format=args.log_format,
    )
    app = create_app(settings)
    ssl: dict[str, str] = {}
    if settings.tls:
        password = settings.p12_password.get_secret_value() if settings.p12_password else None
        files = server_tls(settings.pem_file, settings.key_file, settings.p12_file, password)
        ssl = {"ssl_certfile": files.certfile, "ssl_keyfile": files.keyfile}

    scheme = "https" if ssl else "http"
    log.info("starting api server", url=f"{scheme}://{settings.addr}{settings.prefix}")
    uvicorn.run(
        app,
        host=settings.listen_host,
        port=settings.listen_port,
        log_config=None,
        timeout_keep_alive=30,
        **ssl,
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.loglevel, args.log_format)

    if args.api:
        try:
            serve(args)
        except (ClamAVError, OSError, ValueError) as exc:
            log.error("failed to start api server", error=str(exc))
            return 1
        return 0

    try:
        client = ClamAVClient(
            args.hostname,
            args.port,
            timeout=args.timeout,
            max_size=args.maxsize * 1024 * 1024,
        )
    except ClamAVError as exc:
        log.error("failed to create new clamav client", error=str(exc))
        return 1
    return run_commands(client, args)


def _since(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


if __name__ == "__main__":
    sys.exit(main())
