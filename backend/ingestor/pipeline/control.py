"""
RunControl — the stop signal shared by the coordinator and its workers.

Cancellation and run-fatal abort both set the same event so a single
`wait_or_cancel` interrupts any backoff. The first stop wins: a run
that was cancelled and then hit a fatal error is still reported as
cancelled.

A failed record source is not a stop: nothing more is read, but the
destination is healthy, so every batch already read is archived and
indexed normally. The run is still reported as aborted with the source
error.
"""

from __future__ import annotations

import asyncio
import logging

from ingestor.pipeline.batch import DeadLetterReason

logger = logging.getLogger(__name__)


class RunControl:
    def __init__(self) -> None:
        self.stop_event = asyncio.Event()
        self.reason: DeadLetterReason | None = None
        self.fatal_error: str | None = None
        self.source_error: str | None = None

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    @property
    def cancelled(self) -> bool:
        return self.reason is DeadLetterReason.CANCELLED

    @property
    def destination_aborted(self) -> bool:
        return self.reason is DeadLetterReason.RUN_ABORTED

    @property
    def aborted(self) -> bool:
        return self.destination_aborted or self.source_error is not None

    def cancel(self) -> None:
        if self.stopped:
            return
        self.reason = DeadLetterReason.CANCELLED
        self.stop_event.set()
        logger.warning("Run cancellation requested; dispatch stopped")

    def abort(self, error: BaseException | str) -> None:
        if self.stopped:
            return
        self.reason = DeadLetterReason.RUN_ABORTED
        self.fatal_error = self.fatal_error or str(error)
        self.stop_event.set()
        logger.error("Run aborted | error=%s", error)

    def source_failed(self, error: BaseException | str) -> None:
        """Record a source failure; workers keep draining what was read."""
        if self.source_error is not None:
            return
        self.source_error = str(error)
        self.fatal_error = self.fatal_error or self.source_error
        logger.error("Record source failed; draining batches already read | error=%s", error)

    @property
    def stop_error_class(self) -> str:
        """error_class recorded on documents dead-lettered by the stop."""
        return "RunFatalError" if self.destination_aborted else "RunCancelled"
