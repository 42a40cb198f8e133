"""
Ingest Run API Router

  POST /api/v1/runs                 start a run from an s3:// URI or a local path
  GET  /api/v1/runs/{run_id}        progress snapshot
  GET  /api/v1/runs/{run_id}/report final report (409 while running)
  POST /api/v1/runs/{run_id}/cancel request cancellation

Runs execute as background tasks inside this process; the registry is
per-process, so a restarted API forgets runs whose reports are still
available in the archive bucket.
"""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ingestor.schemas.runs import (
    ErrorResponse,
    RunErrors,
    RunProgress,
    RunReport,
    StartRunRequest,
    StartRunResponse,
)
from ingestor.services.ingestion import IngestionService, RunHandle, RunRegistry
from ingestor.source import open_source

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/runs",
    tags=["Ingest Runs"],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_service(request: Request) -> IngestionService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=ErrorResponse(
                error_code="SERVICE_NOT_READY",
                message="Ingestion service is not initialised.",
            ).model_dump(),
        )
    return service


def get_registry(request: Request) -> RunRegistry:
    return request.app.state.registry


def _handle_or_404(registry: RunRegistry, run_id: str) -> RunHandle:
    handle = registry.get(run_id)
    if handle is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=RunErrors.run_not_found(run_id).model_dump(),
        )
    return handle


def _source_error(source: str, reason: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=RunErrors.source_unavailable(source, reason).model_dump(mode="json"),
    )


# ---------------------------------------------------------------------------
# POST /runs
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=StartRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start an ingest run",
    responses={
        202: {"model": StartRunResponse, "description": "Run accepted and started"},
        400: {"model": ErrorResponse, "description": "Source cannot be opened"},
        422: {"model": ErrorResponse, "description": "Request validation failed"},
    },
)
async def start_run(
    body:     StartRunRequest,
    service:  IngestionService = Depends(get_service),
    registry: RunRegistry      = Depends(get_registry),
) -> JSONResponse:
    if body.source == "-":
        return _source_error(body.source, "stdin is not available over HTTP")
    if not body.source.startswith("s3://") and not Path(body.source).is_file():
        return _source_error(body.source, "file does not exist")

    try:
        source = open_source(body.source, fmt=body.format, region=body.region, resume=body.resume)
    except ValueError as exc:
        return _source_error(body.source, str(exc))

    handle = registry.start(service, source)
    run_id = handle.coordinator.run_id
    logger.info("Run accepted | run=%s source=%s format=%s", run_id, body.source, body.format)

    response = StartRunResponse(run_id=run_id, status=handle.progress().status)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=response.model_dump(mode="json"),
        headers={"Location": f"/api/v1/runs/{run_id}"},
    )


# ---------------------------------------------------------------------------
# GET /runs/{run_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{run_id}",
    response_model=RunProgress,
    summary="Poll run progress",
    responses={404: {"model": ErrorResponse}},
)
async def get_run(run_id: str, registry: RunRegistry = Depends(get_registry)) -> RunProgress:
    return _handle_or_404(registry, run_id).progress()


@router.get(
    "/{run_id}/report",
    response_model=RunReport,
    summary="Final run report",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def get_run_report(run_id: str, registry: RunRegistry = Depends(get_registry)) -> RunReport:
    handle = _handle_or_404(registry, run_id)
    if not handle.finished:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=RunErrors.run_not_finished(run_id).model_dump(),
        )
    return handle.report


@router.post(
    "/{run_id}/cancel",
    response_model=RunProgress,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Cancel a running ingest",
    description=(
        "Stops dispatch immediately. In-flight batches finish their current "
        "attempt; every batch that did not succeed is dead-lettered as cancelled."
    ),
    responses={404: {"model": ErrorResponse}},
)
async def cancel_run(run_id: str, registry: RunRegistry = Depends(get_registry)) -> RunProgress:
    handle = registry.cancel(run_id)
    if handle is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=RunErrors.run_not_found(run_id).model_dump(),
        )
    logger.info("Run cancel requested | run=%s", run_id)
    return handle.progress()
