"""
Batcher — cut the record stream into fixed-size RawBatch units.

Batches never overlap and are emitted in source order, so a document id
can only ever be in flight from one batch at a time. Already-emitted
batches are not rolled back when the source fails mid-stream, and the
records read before the failure are flushed as a final short batch.
"""

from __future__ import annotations

import logging
from typing import AsyncIterable, AsyncIterator

from ingestor.core.errors import SourceReadError
from ingestor.pipeline.batch import RawBatch, SourceRecord

logger = logging.getLogger(__name__)


def _cut(sequence: int, pending: list[SourceRecord]) -> RawBatch:
    return RawBatch(
        sequence=sequence,
        records=tuple(r.data for r in pending),
        start_offset=pending[0].start,
        end_offset=pending[-1].end,
    )


async def batch_records(
    records: AsyncIterable[SourceRecord],
    batch_size: int,
) -> AsyncIterator[RawBatch]:
    """
    Yield RawBatch objects of at most `batch_size` records, sequence from 1.

    Closing the generator early also closes the underlying record iterator,
    releasing the file, stdin or S3 stream behind it.

    Raises:
        SourceReadError: the underlying source raised while being read; any
            records read before the failure have already been yielded.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    sequence = 0
    read = 0
    pending: list[SourceRecord] = []
    failure: Exception | None = None
    iterator = records.__aiter__()

    try:
        while True:
            try:
                record = await iterator.__anext__()
            except StopAsyncIteration:
                break
            except Exception as exc:
                failure = exc
                break

            read += 1
            pending.append(record)
            if len(pending) >= batch_size:
                sequence += 1
                yield _cut(sequence, pending)
                pending = []

        if pending:
            sequence += 1
            yield _cut(sequence, pending)
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    if isinstance(failure, SourceReadError):
        raise failure
    if failure is not None:
        raise SourceReadError(f"record source failed after {read} records: {failure}") from failure

    logger.debug("Batcher exhausted | batches=%d records=%d", sequence, read)
