"""
IngestRun — explicit run state held by the coordinator.

Counters are only ever changed through `accumulate()` / `settle()`, which
take the run lock; `progress()` and `report()` read under the same lock,
so an HTTP poller or monitor thread never sees a half-applied batch.
"""

from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from ingestor.pipeline.batch import BatchResult, DeadLetter
from ingestor.schemas.runs import (
    BatchSummary,
    DeadLetterEntry,
    RunCounters,
    RunProgress,
    RunReport,
    RunStatus,
)


def _entry(dl: DeadLetter) -> DeadLetterEntry:
    loc = dl.archive_location
    return DeadLetterEntry(
        document_id=dl.document_id,
        batch_sequence=dl.batch_sequence,
        reason=dl.reason.value,
        error_class=dl.error_class,
        archive_uri=loc.uri if loc else None,
        archive_key=loc.key if loc else None,
        source_start=dl.source_start,
        source_end=dl.source_end,
    )


class IngestRun:
    def __init__(self, config_snapshot: dict[str, Any], run_id: str | None = None) -> None:
        self.run_id = run_id or uuid.uuid4().hex
        self.started_at = datetime.now(timezone.utc)
        self.ended_at: datetime | None = None
        self.config_snapshot = dict(config_snapshot)
        self.status = RunStatus.RUNNING
        self.fatal_error: str | None = None
        self.report_uri: str | None = None

        self._t0 = time.monotonic()
        self._lock = threading.Lock()
        self._counters = RunCounters()
        self._batches: list[BatchSummary] = []
        self._dead_letters: list[DeadLetterEntry] = []

    # ------------------------------------------------------------------
    # Synchronised accumulation
    # ------------------------------------------------------------------

    def accumulate(self, **deltas: int) -> None:
        with self._lock:
            for name, delta in deltas.items():
                setattr(self._counters, name, getattr(self._counters, name) + delta)

    def settle(self, result: BatchResult) -> None:
        """Fold one terminal BatchResult into the run."""
        with self._lock:
            c = self._counters
            c.batches_settled += 1
            if result.archive_location is not None:
                c.records_archived += result.document_count
            c.documents_indexed += len(result.succeeded_ids)
            c.documents_retried += result.retried_documents
            c.documents_dead_lettered += len(result.dead_letters)
            self._dead_letters.extend(_entry(dl) for dl in result.dead_letters)
            self._batches.append(
                BatchSummary(
                    sequence=result.sequence,
                    status=result.status.value,
                    attempts=result.attempts,
                    document_count=result.document_count,
                    dead_lettered=len(result.dead_letters),
                    archive_key=result.archive_location.key if result.archive_location else None,
                )
            )

    def close(self, status: RunStatus, fatal_error: str | None = None) -> None:
        with self._lock:
            self.status = status
            self.fatal_error = fatal_error
            self.ended_at = datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    @property
    def counters(self) -> RunCounters:
        with self._lock:
            return self._counters.model_copy()

    def progress(self) -> RunProgress:
        with self._lock:
            c = self._counters
            return RunProgress(
                run_id=self.run_id,
                status=self.status,
                batches_dispatched=c.batches_dispatched,
                batches_settled=c.batches_settled,
                documents_indexed=c.documents_indexed,
                documents_dead_lettered=c.documents_dead_lettered,
                records_seen=c.records_seen,
                elapsed_seconds=round(time.monotonic() - self._t0, 3),
            )

    def report(self) -> RunReport:
        with self._lock:
            return RunReport(
                run_id=self.run_id,
                status=self.status,
                started_at=self.started_at,
                ended_at=self.ended_at,
                config_snapshot=dict(self.config_snapshot),
                counters=self._counters.model_copy(),
                batches=sorted(self._batches, key=lambda b: b.sequence),
                dead_letters=list(self._dead_letters),
                fatal_error=self.fatal_error,
                report_uri=self.report_uri,
            )
