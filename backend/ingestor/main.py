"""
FastAPI Application — HTTP trigger for ingest runs

Routes:
  /api/v1/runs/...   start, poll, cancel and fetch reports of ingest runs
  /health            liveness probe (no external checks)

The IngestionService (S3 archive + OpenSearch client) is built in the
lifespan hook unless one is passed to create_app(); shutdown cancels
unfinished runs so their reports are still written.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ingestor import __version__
from ingestor.api.v1.runs import router as runs_router
from ingestor.core.config import settings
from ingestor.core.errors import IngestError, SourceReadError
from ingestor.observability import configure_logging
from ingestor.schemas.runs import ErrorDetail, ErrorResponse
from ingestor.services.ingestion import IngestionService, RunRegistry

logger = logging.getLogger(__name__)

configure_logging(settings)


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    owns_service = app.state.service is None
    if owns_service:
        app.state.service = IngestionService(settings)

    logger.info(
        "Starting ingest API | env=%s index=%s bucket=%s",
        settings.app_env, settings.opensearch_index, settings.s3_upload_bucket,
    )

    yield

    logger.info("Shutting down ingest API")
    await app.state.registry.shutdown()
    if owns_service:
        await app.state.service.aclose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(service: IngestionService | None = None) -> FastAPI:
    app = FastAPI(
        title="People Bulk Ingestion API",
        description="Start, monitor and cancel bulk ingest runs into the people search index.",
        version=__version__,
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.registry = RunRegistry(max_finished=settings.api_finished_runs_kept)

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method, request.url.path, response.status_code, duration_ms, request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=".".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(IngestError)
    async def ingest_error_handler(request: Request, exc: IngestError):
        source_failed = isinstance(exc, SourceReadError)
        logger.warning("Pipeline error | path=%s error=%s: %s", request.url.path, exc.error_class, exc)
        body = ErrorResponse(
            error_code="SOURCE_UNAVAILABLE" if source_failed else "DESTINATION_UNAVAILABLE",
            message=str(exc),
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST if source_failed else status.HTTP_502_BAD_GATEWAY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    app.include_router(runs_router, prefix="/api/v1")

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "people-ingest-api"}

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ingestor.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
