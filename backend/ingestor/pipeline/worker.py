"""
Index Worker — drives one RawBatch to a terminal BatchResult.

Flow per batch:
  1. stop already requested          → dead-letter everything (cancelled / run_aborted)
  2. archive raw batch               → ArchiveError: dead-letter archive_failed, never indexed
     (a stop between archive attempts dead-letters with the stop reason)
  3. bulk index pending documents    → succeeded ids recorded
  4. non-retriable items             → dead-letter immediately, no attempt consumed
  5. retriable items, attempts left  → back off, resubmit only those ids
  6. retriable items, budget spent   → dead-letter retries_exhausted
  7. stop during backoff / attempt   → no fresh retry; remaining ids dead-lettered

RunFatalError from archive or bulk aborts the run through RunControl and
dead-letters the batch as run_aborted. Any other exception is trapped
and reported as worker_error; it never reaches peer workers.
"""

from __future__ import annotations

import logging
import time

from ingestor.core.errors import ArchiveError, RunFatalError
from ingestor.pipeline.batch import BatchResult, BatchState, DeadLetterReason, RawBatch
from ingestor.pipeline.control import RunControl
from ingestor.pipeline.retry import RetryPolicy, wait_or_cancel
from ingestor.schemas.documents import IndexDocument
from ingestor.search.indexer import BulkIndexer
from ingestor.search.mapping import document_id_for, to_index_document
from ingestor.storage.archiver import BatchArchiver

logger = logging.getLogger(__name__)


def _documents(batch: RawBatch) -> dict[str, IndexDocument]:
    """Project records to documents keyed by id; a later duplicate overwrites."""
    docs: dict[str, IndexDocument] = {}
    for record in batch.records:
        doc = to_index_document(record)
        docs[doc.document_id] = doc
    if len(docs) < len(batch):
        logger.info(
            "Duplicate ids collapsed | batch=%d records=%d documents=%d",
            batch.sequence, len(batch), len(docs),
        )
    return docs


class BatchWorker:
    def __init__(
        self,
        run_id: str,
        archiver: BatchArchiver,
        indexer: BulkIndexer,
        policy: RetryPolicy,
        control: RunControl,
    ) -> None:
        self._run_id = run_id
        self._archiver = archiver
        self._indexer = indexer
        self._policy = policy
        self._control = control

    async def process(self, batch: RawBatch) -> BatchResult:
        result = BatchResult.for_batch(batch)
        try:
            await self._process(batch, result)
        except Exception as exc:
            logger.exception(
                "Worker error | run=%s batch=%d error=%s", self._run_id, batch.sequence, exc,
            )
            self._fail_remaining(batch, result, DeadLetterReason.WORKER_ERROR, type(exc).__name__)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _stop_reason(self) -> DeadLetterReason:
        return self._control.reason or DeadLetterReason.CANCELLED

    def _fail_remaining(
        self,
        batch: RawBatch,
        result: BatchResult,
        reason: DeadLetterReason,
        error_class: str,
    ) -> None:
        """Dead-letter every id that is neither indexed nor already dead-lettered."""
        if result.settled:
            return
        done = set(result.succeeded_ids) | {dl.document_id for dl in result.dead_letters}
        remaining: dict[str, str] = {}
        for record in batch.records:
            doc_id = document_id_for(record)
            if doc_id not in done:
                remaining[doc_id] = error_class
        result.dead_letter(remaining, reason)
        result.advance(BatchState.DEAD_LETTERED)

    async def _process(self, batch: RawBatch, result: BatchResult) -> None:
        if self._control.stopped:
            self._fail_remaining(batch, result, self._stop_reason(), self._control.stop_error_class)
            return

        try:
            result.archive_location = await self._archiver.archive(
                self._run_id, batch, self._control.stop_event,
            )
        except ArchiveError as exc:
            if self._control.stopped:
                self._fail_remaining(batch, result, self._stop_reason(), self._control.stop_error_class)
                return
            logger.error(
                "Batch not indexed, archive failed | run=%s batch=%d attempts=%d",
                self._run_id, batch.sequence, exc.attempts,
            )
            self._fail_remaining(batch, result, DeadLetterReason.ARCHIVE_FAILED, exc.error_class)
            return
        except RunFatalError as exc:
            self._control.abort(exc)
            self._fail_remaining(batch, result, DeadLetterReason.RUN_ABORTED, exc.error_class)
            return

        pending = _documents(batch)
        attempt = 0
        while True:
            attempt += 1
            result.attempts = attempt
            result.advance(BatchState.IN_FLIGHT)

            try:
                outcome = await self._indexer.index(list(pending.values()))
            except RunFatalError as exc:
                self._control.abort(exc)
                result.dead_letter(
                    {doc_id: exc.error_class for doc_id in pending}, DeadLetterReason.RUN_ABORTED,
                )
                result.settle()
                return

            result.succeeded_ids.extend(outcome.succeeded)
            result.dead_letter(outcome.non_retriable, DeadLetterReason.NON_RETRIABLE)

            if not outcome.retriable:
                result.settle()
                break

            if not self._policy.should_retry(attempt):
                result.dead_letter(outcome.retriable, DeadLetterReason.RETRIES_EXHAUSTED)
                result.settle()
                break

            if self._control.stopped:
                result.dead_letter(outcome.retriable, self._stop_reason())
                result.settle()
                break

            result.advance(BatchState.BACKING_OFF)
            delay = self._policy.delay(attempt)
            logger.info(
                "Batch backing off | run=%s batch=%d attempt=%d/%d retriable=%d delay=%.2fs",
                self._run_id, batch.sequence, attempt, self._policy.max_attempts,
                len(outcome.retriable), delay,
            )
            t0 = time.monotonic()
            interrupted = await wait_or_cancel(self._control.stop_event, delay)
            result.backoff_seconds += (time.monotonic() - t0) if interrupted else delay

            if interrupted:
                result.dead_letter(outcome.retriable, self._stop_reason())
                result.advance(BatchState.DEAD_LETTERED)
                break

            result.retried_documents += len(outcome.retriable)
            result.advance(BatchState.PENDING)
            pending = {doc_id: pending[doc_id] for doc_id in outcome.retriable}

        logger.info(
            "Batch settled | run=%s batch=%d status=%s attempts=%d indexed=%d dead_lettered=%d",
            self._run_id, batch.sequence, result.status.value, result.attempts,
            len(result.succeeded_ids), len(result.dead_letters),
        )
