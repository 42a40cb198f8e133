"""
Ingest Run — Pydantic Report / Progress / API Schemas

The run report is the only artefact operators and admin tooling consume:
  - status distinguishes succeeded, partially succeeded, aborted and cancelled runs
  - every dead-lettered document carries the archive location of its raw
    batch, so it can be replayed without the original source
  - counters are cumulative for the run

All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class RunStatus(str, Enum):
    """
    Transitions: running → succeeded | partially_succeeded | aborted | cancelled
    """
    RUNNING             = "running"
    SUCCEEDED           = "succeeded"            # every document indexed
    PARTIALLY_SUCCEEDED = "partially_succeeded"  # finished, dead letters present
    ABORTED             = "aborted"              # run-fatal error stopped dispatch
    CANCELLED           = "cancelled"            # operator cancelled the run


class RunCounters(BaseModel):
    records_seen:            int = 0
    records_archived:        int = 0
    documents_indexed:       int = 0
    documents_retried:       int = 0
    documents_dead_lettered: int = 0
    malformed_skipped:       int = 0
    batches_dispatched:      int = 0
    batches_settled:         int = 0


class DeadLetterEntry(BaseModel):
    document_id:    str
    batch_sequence: int
    reason:         str
    error_class:    str
    archive_uri:    str | None = Field(None, description="s3:// location of the raw batch")
    archive_key:    str | None = None
    source_start:   int = Field(..., description="Byte offset where the batch starts in the source")
    source_end:     int


class BatchSummary(BaseModel):
    sequence:         int
    status:           str
    attempts:         int
    document_count:   int
    dead_lettered:    int
    archive_key:      str | None = None


class RunProgress(BaseModel):
    """Polled by operators (CLI monitor, GET /runs/{id})."""
    run_id:                  str
    status:                  RunStatus
    batches_dispatched:      int
    batches_settled:         int
    documents_indexed:       int
    documents_dead_lettered: int
    records_seen:            int
    elapsed_seconds:         float


class RunReport(BaseModel):
    run_id:       str
    status:       RunStatus
    started_at:   datetime
    ended_at:     datetime | None = None
    config_snapshot: dict[str, Any] = Field(default_factory=dict)
    counters:     RunCounters = Field(default_factory=RunCounters)
    batches:      list[BatchSummary] = Field(default_factory=list)
    dead_letters: list[DeadLetterEntry] = Field(default_factory=list)
    fatal_error:  str | None = None
    report_uri:   str | None = None


# ---------------------------------------------------------------------------
# HTTP request / error bodies
# ---------------------------------------------------------------------------

class StartRunRequest(BaseModel):
    source:      str = Field(..., description="s3://bucket/key or a path readable by the service")
    format:      str = Field("auto", description="auto | json | csv")
    region:      str | None = Field(None, description="Region tag applied to CSV rows")
    resume:      int = Field(0, ge=0, description="Skip this many records first")

    @field_validator("format")
    @classmethod
    def _known_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("auto", "json", "csv"):
            raise ValueError("format must be one of: auto, json, csv")
        return v

    @field_validator("source")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("source must not be empty")
        return v


class StartRunResponse(BaseModel):
    run_id: str
    status: RunStatus


class ErrorDetail(BaseModel):
    """Single structured error; may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class RunErrors:
    @staticmethod
    def run_not_found(run_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="RUN_NOT_FOUND",
            message=f"No ingest run with id '{run_id}'.",
        )

    @staticmethod
    def run_not_finished(run_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="RUN_NOT_FINISHED",
            message=f"Run '{run_id}' is still running; the report is written when it ends.",
        )

    @staticmethod
    def source_unavailable(source: str, reason: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="SOURCE_UNAVAILABLE",
            message=f"Cannot open source '{source}': {reason}",
            details=[ErrorDetail(field="source", message=reason, code="SOURCE_UNAVAILABLE")],
        )
