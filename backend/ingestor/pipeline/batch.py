"""
Batch data types and the per-batch state machine.

  pending ──► in_flight ──► succeeded
     ▲            │
     │            ├──► backing_off ──► pending      (retriable, attempts left)
     │            │         └────────► dead_lettered (cancelled during backoff)
     │            └──► dead_lettered                 (non-retriable / exhausted / cancelled)
     └── (start)

A BatchResult is owned by exactly one worker for its whole life; nothing
here is synchronised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ingestor.storage.base import ArchiveLocation


@dataclass(frozen=True)
class SourceRecord:
    """One decoded raw record and the byte range [start, end) it came from."""
    data:  dict[str, Any]
    start: int
    end:   int


@dataclass(frozen=True)
class RawBatch:
    """Fixed-size unit of archival, indexing and retry. Immutable."""
    sequence:     int                         # 1-based, monotonically increasing per run
    records:      tuple[dict[str, Any], ...]
    start_offset: int
    end_offset:   int

    def __len__(self) -> int:
        return len(self.records)


class BatchStatus(str, Enum):
    SUCCEEDED        = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED           = "failed"


class BatchState(str, Enum):
    PENDING       = "pending"
    IN_FLIGHT     = "in_flight"
    BACKING_OFF   = "backing_off"
    SUCCEEDED     = "succeeded"
    DEAD_LETTERED = "dead_lettered"


class DeadLetterReason(str, Enum):
    NON_RETRIABLE     = "non_retriable"
    RETRIES_EXHAUSTED = "retries_exhausted"
    ARCHIVE_FAILED    = "archive_failed"
    CANCELLED         = "cancelled"
    RUN_ABORTED       = "run_aborted"
    WORKER_ERROR      = "worker_error"


_TRANSITIONS: dict[BatchState, frozenset[BatchState]] = {
    BatchState.PENDING:       frozenset({BatchState.IN_FLIGHT, BatchState.DEAD_LETTERED}),
    BatchState.IN_FLIGHT:     frozenset({BatchState.SUCCEEDED, BatchState.BACKING_OFF, BatchState.DEAD_LETTERED}),
    BatchState.BACKING_OFF:   frozenset({BatchState.PENDING, BatchState.DEAD_LETTERED}),
    BatchState.SUCCEEDED:     frozenset(),
    BatchState.DEAD_LETTERED: frozenset(),
}

TERMINAL_STATES = frozenset({BatchState.SUCCEEDED, BatchState.DEAD_LETTERED})


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class DeadLetter:
    document_id:      str
    batch_sequence:   int
    reason:           DeadLetterReason
    error_class:      str
    archive_location: ArchiveLocation | None
    source_start:     int
    source_end:       int


@dataclass
class BatchResult:
    sequence:       int
    document_count: int
    start_offset:   int
    end_offset:     int
    state:          BatchState = BatchState.PENDING
    attempts:       int = 0
    archive_location: ArchiveLocation | None = None
    succeeded_ids:  list[str] = field(default_factory=list)
    dead_letters:   list[DeadLetter] = field(default_factory=list)
    retried_documents: int = 0
    backoff_seconds:   float = 0.0

    @classmethod
    def for_batch(cls, batch: RawBatch) -> "BatchResult":
        return cls(
            sequence=batch.sequence,
            document_count=len(batch),
            start_offset=batch.start_offset,
            end_offset=batch.end_offset,
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def advance(self, new_state: BatchState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"batch {self.sequence}: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def settle(self) -> None:
        """Move from in_flight to the terminal state implied by the outcome."""
        self.advance(BatchState.DEAD_LETTERED if self.dead_letters else BatchState.SUCCEEDED)

    @property
    def settled(self) -> bool:
        return self.state in TERMINAL_STATES

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------

    def dead_letter(self, failures: dict[str, str], reason: DeadLetterReason) -> None:
        """Record `{document_id: error_class}` as dead-lettered for `reason`."""
        for document_id, error_class in failures.items():
            self.dead_letters.append(
                DeadLetter(
                    document_id=document_id,
                    batch_sequence=self.sequence,
                    reason=reason,
                    error_class=error_class,
                    archive_location=self.archive_location,
                    source_start=self.start_offset,
                    source_end=self.end_offset,
                )
            )

    @property
    def status(self) -> BatchStatus:
        if not self.dead_letters:
            return BatchStatus.SUCCEEDED
        if self.succeeded_ids:
            return BatchStatus.PARTIALLY_FAILED
        return BatchStatus.FAILED
