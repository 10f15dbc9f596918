"""HTTP surface of the gateway (FastAPI)."""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException
from starlette.middleware.base import BaseHTTPMiddleware

from clamav_gateway.async_client import AsyncClamAVClient
from clamav_gateway.config import Settings
from clamav_gateway.exceptions import ClamAVError
from clamav_gateway.models import BatchOutcome, Result, ResultStatus
from clamav_gateway.orchestrator import scan_uploads

log = structlog.get_logger(__name__)

NOT_MULTIPART = "request Content-Type isn't multipart/form-data"


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and write one access log line for it."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.monotonic()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        log.info(
            "request",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )
        response.headers["X-Request-ID"] = request_id
        return response


def _single(status: ResultStatus, details: str, status_code: int) -> JSONResponse:
    outcome = BatchOutcome()
    outcome.add(Result(status, details), status_code)
    return JSONResponse(outcome.to_dict(), status_code=outcome.status_code)


def build_router(client: AsyncClamAVClient, prefix: str = "") -> APIRouter:
    prefix = prefix.strip("/")
    router = APIRouter(prefix=f"/{prefix}" if prefix else "")

    @router.post("/scan")
    async def scan(request: Request) -> JSONResponse:
        content_type = request.headers.get("content-type", "")
        if not content_type.startswith("multipart/form-data"):
            log.warning("unable to parse multipart form", content_type=content_type)
            return _single(ResultStatus.FAILED, NOT_MULTIPART, 400)

        try:
            form = await request.form()
        except MultiPartException as exc:
            log.warning("unable to parse multipart form", error=exc.message)
            return _single(ResultStatus.FAILED, exc.message, 400)
        except StarletteHTTPException as exc:
            log.warning("unable to parse multipart form", error=exc.detail)
            return _single(ResultStatus.FAILED, str(exc.detail), 400)

        try:
            uploads = [(key, value) for key, value in form.multi_items() if isinstance(value, UploadFile)]
            outcome = await scan_uploads(client, uploads)
        finally:
            await form.close()
        return JSONResponse(outcome.to_dict(), status_code=outcome.status_code)

    async def ping() -> JSONResponse:
        if not await client.ping():
            log.error("failed to ping clamav")
            return _single(ResultStatus.FAILED, "clamav is not ready", 502)
        return _single(ResultStatus.SUCCESS, "clamav is ready", 200)

    router.add_api_route("/health", ping, methods=["GET"])
    router.add_api_route("/", ping, methods=["GET"])

    @router.put("/reload")
    async def reload() -> JSONResponse:
        try:
            await client.reload()
        except ClamAVError as exc:
            log.error("failed to reload clamav", error=str(exc))
            return _single(ResultStatus.FAILED, str(exc), 502)
        return _single(ResultStatus.SUCCESS, "triggered reload", 201)

    @router.get("/stats")
    async def stats() -> JSONResponse:
        try:
            text = await client.stats()
        except ClamAVError as exc:
            log.error("failed to get stats of clamav", error=str(exc))
            return _single(ResultStatus.FAILED, str(exc), 502)
        return _single(ResultStatus.SUCCESS, text, 200)

    @router.get("/version")
    async def version() -> JSONResponse:
        try:
            text = await client.version()
        except ClamAVError as exc:
            log.error("failed to get version of clamav", error=str(exc))
            return _single(ResultStatus.FAILED, str(exc), 502)
        return _single(ResultStatus.SUCCESS, text, 200)

    return router


def create_app(settings: Settings | None = None, client: AsyncClamAVClient | None = None) -> FastAPI:
    """Build the gateway application.

    Args:
        settings: Defaults to a :class:`Settings` read from the environment.
        client: Defaults to an :class:`AsyncClamAVClient` built from
            *settings*; building one resolves the daemon address.
    """
    settings = settings or Settings()
    if client is None:
        client = AsyncClamAVClient(
            settings.hostname,
            settings.port,
            timeout=settings.timeout,
            max_size=settings.max_size_bytes,
        )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        log.info("starting api", prefix=settings.prefix, clamav=str(client.address))
        yield
        await client.close()

    app = FastAPI(title="ClamAV Gateway", lifespan=lifespan)
    app.add_middleware(RequestLogMiddleware)
    app.include_router(build_router(client, settings.prefix))
    app.state.clamav = client
    return app
