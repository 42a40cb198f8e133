"""
Ingestion Service

Wires the pipeline from settings and runs it end to end:
  1. Apply the people index template, create the target index (bulk-tuned)
  2. Run the IngestCoordinator over the record source
  3. Restore replicas and refresh on the index (skipped when the destination
     aborted the run; a failed source still leaves a usable index)
  4. Persist the run report next to the archived batches
  5. Return the final RunReport

A failure in step 1 aborts the run before any batch is dispatched.
A failure in steps 3-4 is logged; the report still carries the outcome
of the load itself.

RunRegistry keeps in-process handles for runs started over HTTP so their
progress can be polled and they can be cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from ingestor.core.config import Settings, settings as default_settings
from ingestor.core.errors import ArchiveError, IngestError, RunFatalError
from ingestor.pipeline.coordinator import IngestCoordinator
from ingestor.pipeline.retry import RetryPolicy
from ingestor.schemas.runs import RunProgress, RunReport, RunStatus
from ingestor.search.base import SearchEngine
from ingestor.search.indexer import BulkIndexer
from ingestor.search.opensearch import OpenSearchClient
from ingestor.source.records import RecordSource
from ingestor.storage.archiver import BatchArchiver
from ingestor.storage.base import ObjectStore
from ingestor.storage.s3 import S3ObjectStore

logger = logging.getLogger(__name__)


class IngestionService:
    def __init__(
        self,
        cfg: Settings | None = None,
        store: ObjectStore | None = None,
        engine: SearchEngine | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._cfg = cfg or default_settings
        store = store or S3ObjectStore(self._cfg)
        engine = engine or OpenSearchClient(self._cfg)

        self.store = store
        self.engine = engine
        self.archiver = BatchArchiver(store, self._cfg)
        self.indexer = BulkIndexer(engine)
        self._policy = policy

    def coordinator(
        self,
        *,
        batch_size: int | None = None,
        extra_snapshot: dict[str, Any] | None = None,
    ) -> IngestCoordinator:
        return IngestCoordinator(
            self.archiver,
            self.indexer,
            self._policy or RetryPolicy.from_settings(self._cfg),
            self._cfg,
            batch_size=batch_size,
            extra_snapshot=extra_snapshot,
        )

    # ------------------------------------------------------------------
    # Index lifecycle
    # ------------------------------------------------------------------

    async def prepare_index(self) -> None:
        await self.engine.apply_index_template()
        await self.engine.ensure_index()

    async def finalize_index(self) -> None:
        await self.engine.finalize_index()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def execute(
        self,
        coordinator: IngestCoordinator,
        source: RecordSource,
        *,
        prepare: bool = True,
    ) -> RunReport:
        run = coordinator.ingest_run
        try:
            if prepare:
                await self.prepare_index()
        except IngestError as exc:
            logger.error("Index preparation failed | run=%s error=%s", run.run_id, exc)
            coordinator.control.abort(exc)
            run.close(RunStatus.ABORTED, str(exc))
            await self.persist_report(coordinator)
            return run.report()

        report = await coordinator.run(source)

        if not coordinator.control.destination_aborted:
            try:
                await self.finalize_index()
            except IngestError as exc:
                logger.error("Index finalization failed | run=%s error=%s", run.run_id, exc)

        await self.persist_report(coordinator)
        return run.report()

    async def persist_report(self, coordinator: IngestCoordinator) -> str | None:
        run = coordinator.ingest_run
        body = run.report().model_dump_json(indent=2).encode("utf-8")
        try:
            location = await self.archiver.archive_report(run.run_id, body)
        except (ArchiveError, RunFatalError) as exc:
            logger.error("Report not persisted | run=%s error=%s", run.run_id, exc)
            return None
        run.report_uri = location.uri
        logger.info("Report persisted | run=%s uri=%s", run.run_id, location.uri)
        return location.uri

    async def aclose(self) -> None:
        await self.engine.aclose()


# ---------------------------------------------------------------------------
# In-process run registry (HTTP surface)
# ---------------------------------------------------------------------------

@dataclass
class RunHandle:
    coordinator: IngestCoordinator
    task:        asyncio.Task | None = None
    report:      RunReport | None = None
    error:       str | None = None

    @property
    def finished(self) -> bool:
        return self.report is not None

    def progress(self) -> RunProgress:
        return self.coordinator.progress()


@dataclass
class RunRegistry:
    """
    Handles of runs started over HTTP, keyed by run id.

    Unfinished runs are always kept. Once more than `max_finished` runs
    have finished, finished handles are dropped in start order; their
    reports remain in the archive bucket.
    """

    max_finished: int = 100
    runs: dict[str, RunHandle] = field(default_factory=dict)

    def start(
        self,
        service: IngestionService,
        source: RecordSource,
        coordinator: IngestCoordinator | None = None,
    ) -> RunHandle:
        coordinator = coordinator or service.coordinator()
        handle = RunHandle(coordinator=coordinator)
        self.runs[coordinator.run_id] = handle

        async def _execute() -> None:
            try:
                handle.report = await service.execute(coordinator, source)
            except Exception as exc:
                logger.exception("Run crashed | run=%s", coordinator.run_id)
                handle.error = f"{type(exc).__name__}: {exc}"
                run = coordinator.ingest_run
                if run.ended_at is None:
                    run.close(RunStatus.ABORTED, handle.error)
                handle.report = run.report()
            self._evict_finished()

        handle.task = asyncio.create_task(_execute(), name=f"ingest-run-{coordinator.run_id}")
        return handle

    def _evict_finished(self) -> None:
        finished = [run_id for run_id, h in self.runs.items() if h.finished]
        for run_id in finished[: max(0, len(finished) - self.max_finished)]:
            del self.runs[run_id]
            logger.debug("Run handle evicted | run=%s", run_id)

    def get(self, run_id: str) -> RunHandle | None:
        return self.runs.get(run_id)

    def cancel(self, run_id: str) -> RunHandle | None:
        handle = self.runs.get(run_id)
        if handle is not None and not handle.finished:
            handle.coordinator.cancel()
        return handle

    async def shutdown(self) -> None:
        """Cancel unfinished runs and wait for them to settle."""
        pending = [h for h in self.runs.values() if h.task is not None and not h.task.done()]
        for handle in pending:
            handle.coordinator.cancel()
        if pending:
            await asyncio.gather(*(h.task for h in pending), return_exceptions=True)
