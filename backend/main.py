"""FastAPI application exposing the decision record API."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import configure_logging
from decision.errors import (
    AnalysisFailure,
    PersistenceFailure,
    RecordNotFound,
    StaleRecordError,
    StorageUnavailable,
)
from decision.runtime import DecisionRuntime, build_runtime_from_env, get_storage_mode
from routers import decisions, session

logger = logging.getLogger(__name__)


def _error(status_code: int, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), **extra})


def _persistence_extra(exc: PersistenceFailure) -> dict:
    extra: dict = {"scope": str(exc.scope) if exc.scope else None}
    if exc.record is not None:
        # Hand the unsaved record back so the client can retry without re-analysing
        extra["unsavedRecord"] = exc.record.model_dump(mode="json", by_alias=True)
    return extra


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AnalysisFailure)
    async def analysis_failure(request: Request, exc: AnalysisFailure) -> JSONResponse:
        return _error(status.HTTP_502_BAD_GATEWAY, exc)

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable(request: Request, exc: StorageUnavailable) -> JSONResponse:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc, **_persistence_extra(exc))

    @app.exception_handler(PersistenceFailure)
    async def persistence_failure(request: Request, exc: PersistenceFailure) -> JSONResponse:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc, **_persistence_extra(exc))

    @app.exception_handler(RecordNotFound)
    async def record_not_found(request: Request, exc: RecordNotFound) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(StaleRecordError)
    async def stale_record(request: Request, exc: StaleRecordError) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(ValueError)
    async def value_error(request: Request, exc: ValueError) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, exc)


def create_app(runtime: Optional[DecisionRuntime] = None) -> FastAPI:
    """Build the app; without *runtime* one is created from the environment at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = runtime or build_runtime_from_env()
        await active.start()
        app.state.runtime = active
        logger.info("Decision runtime started (%s)", active.controller.scope)
        try:
            yield
        finally:
            await active.close()
            app.state.runtime = None

    app = FastAPI(title="Decision Records", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(decisions.router)
    app.include_router(decisions.suggestions_router)
    app.include_router(session.router)

    @app.get("/storage-info")
    async def get_storage_info(request: Request) -> dict[str, str]:
        """Return where records are currently stored.

        Tells the client whether it is looking at device-local records or
        the signed-in user's remote records, and whether the remote store
        is persistent.
        """
        return get_storage_mode(request.app.state.runtime)

    return app


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
