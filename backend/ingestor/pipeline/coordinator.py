"""
Ingest Coordinator — run lifecycle over a bounded batch queue.

  RecordSource ─► batch_records() ─► asyncio.Queue(pool_size × depth) ─► N BatchWorker tasks
                                                                              │
                                               IngestRun.settle(result) ◄─────┘

Memory is bounded by the queue, not by the dataset: the producer blocks
on `queue.put()` while every worker is busy.

Stopping:
  cancel()          dispatch stops; in-flight batches finish their current
                    attempt; queued batches are dead-lettered `cancelled`
  RunFatalError     same, but queued batches are dead-lettered `run_aborted`
  SourceReadError   reading stops; every batch already read (including the
                    short final one) is archived and indexed normally, then
                    the run is reported aborted with the source error

A stalled source never blocks a stop: each read is raced against the
stop event and abandoned when it fires.

Every dispatched batch is settled exactly once before `run()` returns.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator

from ingestor.core.config import (
    BATCH_SIZE_MAX,
    BATCH_SIZE_MIN,
    Settings,
    clamp,
    settings as default_settings,
)
from ingestor.core.errors import SourceReadError
from ingestor.pipeline.batch import RawBatch
from ingestor.pipeline.batcher import batch_records
from ingestor.pipeline.control import RunControl
from ingestor.pipeline.retry import RetryPolicy
from ingestor.pipeline.run import IngestRun
from ingestor.pipeline.worker import BatchWorker
from ingestor.schemas.runs import RunProgress, RunReport, RunStatus
from ingestor.search.indexer import BulkIndexer
from ingestor.source.records import RecordSource
from ingestor.storage.archiver import BatchArchiver

logger = logging.getLogger(__name__)

_STOP: Any = None  # one per worker, after the last batch


class IngestCoordinator:
    def __init__(
        self,
        archiver: BatchArchiver,
        indexer: BulkIndexer,
        policy: RetryPolicy | None = None,
        cfg: Settings | None = None,
        *,
        batch_size: int | None = None,
        pool_size: int | None = None,
        run_id: str | None = None,
        extra_snapshot: dict[str, Any] | None = None,
    ) -> None:
        self._cfg = cfg or default_settings
        self._archiver = archiver
        self._indexer = indexer
        self._policy = policy or RetryPolicy.from_settings(self._cfg)

        self.batch_size = clamp(batch_size or self._cfg.ingest_batch_size, BATCH_SIZE_MIN, BATCH_SIZE_MAX)
        self.pool_size = max(1, pool_size or self._cfg.pool_size)
        self.queue_capacity = self.pool_size * self._cfg.ingest_queue_depth_factor

        snapshot = self._cfg.snapshot()
        snapshot.update(
            batch_size=self.batch_size,
            pool_size=self.pool_size,
            queue_capacity=self.queue_capacity,
        )
        snapshot.update(extra_snapshot or {})

        self.control = RunControl()
        self.ingest_run = IngestRun(snapshot, run_id=run_id)

    @property
    def run_id(self) -> str:
        return self.ingest_run.run_id

    def cancel(self) -> None:
        self.control.cancel()

    def progress(self) -> RunProgress:
        return self.ingest_run.progress()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, source: RecordSource) -> RunReport:
        logger.info(
            "Run started | run=%s source=%s batch_size=%d pool_size=%d queue=%d",
            self.run_id, source.description, self.batch_size, self.pool_size, self.queue_capacity,
        )
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_capacity)
        workers = [
            asyncio.create_task(self._worker_loop(queue), name=f"ingest-worker-{i}")
            for i in range(self.pool_size)
        ]
        monitor = asyncio.create_task(self._monitor(), name="ingest-monitor")

        try:
            await self._produce(source, queue)
            for _ in workers:
                await queue.put(_STOP)
            await asyncio.gather(*workers)
        except asyncio.CancelledError:
            for task in workers:
                task.cancel()
            raise
        finally:
            monitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await monitor

        self.ingest_run.accumulate(malformed_skipped=source.malformed)
        self.ingest_run.close(self._final_status(), self.control.fatal_error)

        report = self.ingest_run.report()
        c = report.counters
        logger.info(
            "Run finished | run=%s status=%s records=%d indexed=%d retried=%d "
            "dead_lettered=%d malformed=%d batches=%d",
            self.run_id, report.status.value, c.records_seen, c.documents_indexed,
            c.documents_retried, c.documents_dead_lettered, c.malformed_skipped,
            c.batches_settled,
        )
        return report

    async def _produce(self, source: RecordSource, queue: asyncio.Queue) -> None:
        batches = batch_records(source, self.batch_size)
        stop = asyncio.create_task(self.control.stop_event.wait(), name="ingest-stop-watch")
        try:
            while not self.control.stopped:
                batch = await self._next_batch(batches, stop)
                if batch is None:
                    break
                self.ingest_run.accumulate(records_seen=len(batch))
                await self._dispatch(batch, queue)
            if self.control.stopped:
                logger.info(
                    "Dispatch stopped | run=%s dispatched=%d reason=%s",
                    self.run_id, self.ingest_run.counters.batches_dispatched,
                    self.control.reason.value,
                )
        except SourceReadError as exc:
            self.control.source_failed(exc)
        finally:
            stop.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop
            await batches.aclose()

    async def _next_batch(self, batches: AsyncIterator[RawBatch], stop: asyncio.Task) -> RawBatch | None:
        """Next batch from the source, or None at end of stream or on a run stop."""
        read = asyncio.ensure_future(batches.__anext__())
        try:
            await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not read.done():
                # source stalled (idle stdin, stuck S3 body); abandon the read
                read.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await read
        if read.cancelled():
            return None
        try:
            return read.result()
        except StopAsyncIteration:
            return None

    async def _dispatch(self, batch: RawBatch, queue: asyncio.Queue) -> None:
        await queue.put(batch)
        self.ingest_run.accumulate(batches_dispatched=1)

    async def _worker_loop(self, queue: asyncio.Queue) -> None:
        worker = BatchWorker(self.run_id, self._archiver, self._indexer, self._policy, self.control)
        while True:
            batch = await queue.get()
            try:
                if batch is _STOP:
                    return
                result = await worker.process(batch)
                self.ingest_run.settle(result)
            finally:
                queue.task_done()

    async def _monitor(self) -> None:
        interval = self._cfg.progress_log_interval_seconds
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            p = self.progress()
            logger.info(
                "Progress | run=%s records=%d dispatched=%d settled=%d indexed=%d "
                "dead_lettered=%d elapsed=%.0fs",
                p.run_id, p.records_seen, p.batches_dispatched, p.batches_settled,
                p.documents_indexed, p.documents_dead_lettered, p.elapsed_seconds,
            )

    def _final_status(self) -> RunStatus:
        if self.control.cancelled:
            return RunStatus.CANCELLED
        if self.control.aborted:
            return RunStatus.ABORTED
        if self.ingest_run.counters.documents_dead_lettered:
            return RunStatus.PARTIALLY_SUCCEEDED
        return RunStatus.SUCCEEDED
