from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from brawlsync import __version__
from brawlsync.api.schemas import ErrorResponse, HealthResponse, PlayerRead, ServiceInfo, StatusResponse
from brawlsync.core.errors import (
    BrawlSyncError,
    ConfigError,
    QuotaExhaustedError,
    RemoteApiError,
    RemoteNotFoundError,
    RemoteThrottledError,
    StoreUnavailableError,
)
from brawlsync.runtime import SyncRuntime
from brawlsync.utils.logger import get_logger

log = get_logger(__name__)

_LOOKUP_ERRORS = {404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}}

_STATUS_BY_ERROR = (
    (RemoteNotFoundError, 404),
    (QuotaExhaustedError, 503),
    (RemoteThrottledError, 503),
    (StoreUnavailableError, 503),
    (RemoteApiError, 502),
    (ConfigError, 500),
)


def _status_for(exc: BrawlSyncError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def create_app(runtime: SyncRuntime, *, start_runtime: bool = False) -> FastAPI:
    """
    Build the ops API around an already wired runtime.

    With ``start_runtime`` the sweep timer and refresh workers run inside the
    API process for its whole lifetime.
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if start_runtime:
            await runtime.start()
        try:
            yield
        finally:
            if start_runtime:
                await runtime.stop()
            else:
                await runtime.close()

    app = FastAPI(
        title="brawlsync ops API",
        description="Budget, sweep and refresh-queue status for the Brawlhalla sync worker",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    @app.exception_handler(BrawlSyncError)
    async def brawlsync_error_handler(request: Request, exc: BrawlSyncError):
        status = _status_for(exc)
        if status >= 500:
            log.warning(f"{request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status, content=exc.as_dict())

    @app.get("/", response_model=ServiceInfo)
    async def root():
        return ServiceInfo(service="brawlsync", version=__version__)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(**await runtime.health())

    @app.get("/status", response_model=StatusResponse, responses={503: {"model": ErrorResponse}})
    async def status():
        return StatusResponse(**await runtime.status())

    @app.get("/players/{brawlhalla_id}", response_model=PlayerRead, responses=_LOOKUP_ERRORS)
    async def get_player(brawlhalla_id: int):
        result = await runtime.lookup.get_player(brawlhalla_id)
        return PlayerRead(**result.to_dict())

    @app.get("/clans/{clan_id}", responses=_LOOKUP_ERRORS)
    async def get_clan(clan_id: int) -> Dict[str, Any]:
        return await runtime.clans.get_clan(clan_id)

    return app


__all__ = ["create_app"]
