"""
Unit Tests — Batcher
═════════════════════
Tests for ingestor/pipeline/batcher.py

Coverage:
  ✅ N records with batch size B yield ⌈N/B⌉ batches
  ✅ Batch sizes sum to N and the union reconstructs the source in order
  ✅ Sequence numbers start at 1 and increase by one
  ✅ Byte ranges are contiguous and never overlap
  ✅ Empty source yields nothing
  ✅ Source failures surface as SourceReadError after earlier batches,
     with records read before the failure flushed as a short final batch
  ✅ Closing the batch stream early closes the record source
"""

from __future__ import annotations

import math

import pytest

from ingestor.core.errors import SourceReadError
from ingestor.pipeline.batch import SourceRecord
from ingestor.pipeline.batcher import batch_records
from ingestor.source import MemoryRecordSource


async def _batches(source, size):
    return [b async for b in batch_records(source, size)]


@pytest.mark.unit
@pytest.mark.pipeline
class TestBatchRecords:

    @pytest.mark.parametrize("n, size", [
        (0, 3),
        (1, 3),
        (3, 3),
        (10, 3),
        (2500, 1000),
        (7, 1),
    ])
    async def test_partition_reconstructs_source(self, make_records, n, size):
        records = make_records(n)
        batches = await _batches(MemoryRecordSource(records), size)

        assert len(batches) == math.ceil(n / size)
        assert sum(len(b) for b in batches) == n
        assert [r for b in batches for r in b.records] == records
        assert all(0 < len(b) <= size for b in batches)

    async def test_2500_records_in_batches_of_1000(self, make_records):
        batches = await _batches(MemoryRecordSource(make_records(2500)), 1000)
        assert [len(b) for b in batches] == [1000, 1000, 500]
        assert [b.sequence for b in batches] == [1, 2, 3]

    async def test_offsets_are_contiguous(self, make_records):
        batches = await _batches(MemoryRecordSource(make_records(10)), 4)
        assert batches[0].start_offset == 0
        for prev, nxt in zip(batches, batches[1:]):
            assert prev.end_offset == nxt.start_offset
            assert prev.start_offset < prev.end_offset

    async def test_source_error_after_first_batch(self):
        async def failing():
            for i in range(3):
                yield SourceRecord(data={"id": str(i)}, start=i, end=i + 1)
            raise OSError("disk went away")

        seen = []
        with pytest.raises(SourceReadError, match="disk went away"):
            async for batch in batch_records(failing(), 2):
                seen.append(batch)

        assert [b.sequence for b in seen] == [1, 2]
        assert [r["id"] for r in seen[0].records] == ["0", "1"]
        assert [r["id"] for r in seen[1].records] == ["2"]
        assert (seen[1].start_offset, seen[1].end_offset) == (2, 3)

    async def test_source_error_before_any_record(self):
        async def failing():
            raise OSError("no such bucket object")
            yield  # pragma: no cover

        with pytest.raises(SourceReadError, match="after 0 records"):
            await _batches(failing(), 2)

    async def test_closing_early_closes_source(self):
        closed = []

        async def endless():
            i = 0
            try:
                while True:
                    yield SourceRecord(data={"id": str(i)}, start=i, end=i + 1)
                    i += 1
            finally:
                closed.append(i)

        batches = batch_records(endless(), 2)
        first = await batches.__anext__()
        await batches.aclose()

        assert first.sequence == 1
        assert len(closed) == 1

    async def test_rejects_non_positive_size(self, make_records):
        with pytest.raises(ValueError):
            await _batches(MemoryRecordSource(make_records(1)), 0)
