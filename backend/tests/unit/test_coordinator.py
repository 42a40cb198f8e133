"""
Unit Tests — Ingest Coordinator
════════════════════════════════
Tests for ingestor/pipeline/coordinator.py (fake store + fake engine)

Coverage:
  ✅ 2500 records / batch 1000 → 3 batches (1000, 1000, 500), all succeeded
  ✅ One always-failing batch → partially_succeeded, its documents dead-lettered
     with the batch's archive location
  ✅ Cancel with 2 of 4 batches in flight: earlier batches stay succeeded,
     in-flight batches dead-lettered cancelled, no fresh retries
  ✅ Queued batches never archived after cancel carry no archive location
  ✅ Run-fatal bulk error aborts the run and stops dispatch
  ✅ Source failure stops reading; every record already read (the short
     final batch included) is archived and indexed or dead-lettered with its
     archive location, retries still run, and the run reports aborted
  ✅ Cancel ends the run even while the source is stalled; the source is closed
  ✅ Malformed records are counted
  ✅ Resume offset skips records without counting them as seen
  ✅ Worker crash on one batch never stops its peers
  ✅ Pool size / queue capacity / batch size clamping
  ✅ dispatched == settled for every terminal run
"""

from __future__ import annotations

import asyncio

import pytest

from ingestor.pipeline.batch import SourceRecord
from ingestor.pipeline.coordinator import IngestCoordinator
from ingestor.pipeline.retry import RetryPolicy
from ingestor.schemas.runs import RunStatus
from ingestor.search.indexer import BulkIndexer
from ingestor.search.mapping import document_id_for
from ingestor.source.records import (
    CsvRecordSource,
    JsonRecordSource,
    MemoryRecordSource,
    RecordSource,
)
from ingestor.storage.archiver import BatchArchiver


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_coordinator(fake_store, fake_engine, test_settings):
    def _make(**kwargs) -> IngestCoordinator:
        return IngestCoordinator(
            BatchArchiver(fake_store, test_settings),
            BulkIndexer(fake_engine),
            RetryPolicy(max_attempts=3, base_delay=0.01, jitter_fraction=0.0),
            test_settings,
            **kwargs,
        )
    return _make


async def _until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


def _chunks(*parts: bytes):
    async def _gen():
        for part in parts:
            yield part
    return _gen


class _FlakySource(RecordSource):
    """Yields the given records, then fails like a dropped connection."""

    def __init__(self, records) -> None:
        super().__init__("flaky")
        self._items = records

    async def _records(self):
        for i, record in enumerate(self._items):
            yield SourceRecord(data=record, start=i * 10, end=i * 10 + 10)
        raise OSError("connection reset")


class _StalledSource(RecordSource):
    """Yields the given records, then blocks forever like an idle stdin pipe."""

    def __init__(self, records) -> None:
        super().__init__("stalled")
        self._items = records
        self.closed = False

    async def _records(self):
        try:
            for i, record in enumerate(self._items):
                yield SourceRecord(data=record, start=i * 10, end=i * 10 + 10)
            await asyncio.Event().wait()
        finally:
            self.closed = True


def _assert_all_settled(report) -> None:
    c = report.counters
    assert c.batches_dispatched == c.batches_settled
    assert len(report.batches) == c.batches_settled


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.pipeline
class TestCoordinatorRun:

    async def test_three_batches_all_succeed(self, make_coordinator, make_records, fake_engine, fake_store):
        coordinator = make_coordinator()

        report = await coordinator.run(MemoryRecordSource(make_records(2500)))

        assert report.status is RunStatus.SUCCEEDED
        assert [b.sequence for b in report.batches] == [1, 2, 3]
        assert [b.document_count for b in report.batches] == [1000, 1000, 500]
        assert {b.status for b in report.batches} == {"succeeded"}
        assert report.dead_letters == []
        assert report.counters.records_seen == 2500
        assert report.counters.records_archived == 2500
        assert report.counters.documents_indexed == 2500
        assert len(fake_engine.indexed) == 2500
        assert len([k for k in fake_store.objects if k.endswith(".ndjson")]) == 3
        assert report.ended_at is not None
        _assert_all_settled(report)

    async def test_config_snapshot_recorded(self, make_coordinator, make_records):
        coordinator = make_coordinator(extra_snapshot={"source": "memory"})

        report = await coordinator.run(MemoryRecordSource(make_records(1)))

        snap = report.config_snapshot
        assert snap["batch_size"] == 1000
        assert snap["pool_size"] == 2
        assert snap["queue_capacity"] == 4
        assert snap["source"] == "memory"
        assert "opensearch_master_password" not in snap

    async def test_empty_source(self, make_coordinator):
        report = await make_coordinator().run(MemoryRecordSource([]))

        assert report.status is RunStatus.SUCCEEDED
        assert report.batches == []
        assert report.counters.records_seen == 0

    async def test_failing_batch_partially_succeeds(self, make_coordinator, make_records, fake_engine):
        records = make_records(2000)
        second = {document_id_for(r) for r in records[1000:]}
        fake_engine.responder = lambda doc, call: 503 if doc.document_id in second else 201

        report = await make_coordinator().run(MemoryRecordSource(records))

        assert report.status is RunStatus.PARTIALLY_SUCCEEDED
        by_seq = {b.sequence: b for b in report.batches}
        assert by_seq[1].status == "succeeded"
        assert by_seq[2].status == "failed"
        assert by_seq[2].attempts == 3
        assert {dl.document_id for dl in report.dead_letters} == second
        assert {dl.reason for dl in report.dead_letters} == {"retries_exhausted"}
        assert {dl.archive_uri for dl in report.dead_letters} == {
            "s3://test-bucket/ingest/raw/" + report.run_id + "/batch-000002.ndjson"
        }
        assert report.counters.documents_retried == 2000
        assert report.counters.documents_dead_lettered == 1000
        _assert_all_settled(report)

    async def test_worker_crash_is_isolated(self, make_coordinator, make_records, fake_engine):
        records = make_records(3000)
        poisoned = document_id_for(records[1500])

        def responder(doc, call):
            if doc.document_id == poisoned:
                raise RuntimeError("engine client bug")
            return 201

        fake_engine.responder = responder

        report = await make_coordinator().run(MemoryRecordSource(records))

        assert report.status is RunStatus.PARTIALLY_SUCCEEDED
        by_seq = {b.sequence: b for b in report.batches}
        assert by_seq[1].status == "succeeded"
        assert by_seq[2].status == "failed"
        assert by_seq[3].status == "succeeded"
        assert {dl.reason for dl in report.dead_letters} == {"worker_error"}
        assert {dl.error_class for dl in report.dead_letters} == {"RuntimeError"}

    async def test_resume_skips_records(self, make_coordinator, make_records, fake_engine):
        records = make_records(1500)

        report = await make_coordinator().run(MemoryRecordSource(records, resume=500))

        assert report.counters.records_seen == 1000
        assert document_id_for(records[0]) not in fake_engine.indexed
        assert document_id_for(records[500]) in fake_engine.indexed


# ─────────────────────────────────────────────────────────────────────────────
# Sizing
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.pipeline
class TestCoordinatorSizing:

    def test_pool_and_queue_from_settings(self, make_coordinator):
        coordinator = make_coordinator()
        assert coordinator.pool_size == 2
        assert coordinator.queue_capacity == 4

    def test_explicit_pool_size(self, make_coordinator):
        coordinator = make_coordinator(pool_size=3)
        assert coordinator.pool_size == 3
        assert coordinator.queue_capacity == 6

    @pytest.mark.parametrize("requested, expected", [(10, 1000), (5000, 5000), (50_000, 20_000)])
    def test_batch_size_clamped(self, make_coordinator, requested, expected):
        assert make_coordinator(batch_size=requested).batch_size == expected

    def test_run_id_override(self, make_coordinator):
        assert make_coordinator(run_id="abc").run_id == "abc"


# ─────────────────────────────────────────────────────────────────────────────
# Stopping
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.pipeline
class TestCoordinatorStop:

    async def test_cancel_with_batches_in_flight(self, make_coordinator, make_records, fake_engine):
        fake_engine.gate = asyncio.Event()
        fake_engine.gate_after = 2
        fake_engine.responder = lambda doc, call: 201 if call <= 2 else 503
        coordinator = make_coordinator(pool_size=2)

        task = asyncio.create_task(coordinator.run(MemoryRecordSource(make_records(4000))))
        await _until(lambda: fake_engine.entered == 2)

        progress = coordinator.progress()
        assert progress.status is RunStatus.RUNNING
        assert progress.batches_settled == 2

        coordinator.cancel()
        fake_engine.gate.set()
        report = await task

        assert report.status is RunStatus.CANCELLED
        by_seq = {b.sequence: b for b in report.batches}
        assert by_seq[1].status == "succeeded"
        assert by_seq[2].status == "succeeded"
        assert by_seq[3].status == "failed"
        assert by_seq[4].status == "failed"
        assert by_seq[3].attempts == 1
        assert len(fake_engine.calls) == 4
        assert report.counters.documents_indexed == 2000
        assert {dl.reason for dl in report.dead_letters} == {"cancelled"}
        assert {dl.error_class for dl in report.dead_letters} == {"RunCancelled"}
        assert all(dl.archive_uri for dl in report.dead_letters)
        _assert_all_settled(report)

    async def test_cancel_leaves_queued_batches_unarchived(
        self, make_coordinator, make_records, fake_engine, fake_store,
    ):
        fake_engine.gate = asyncio.Event()
        coordinator = make_coordinator(pool_size=2)

        task = asyncio.create_task(coordinator.run(MemoryRecordSource(make_records(10_000))))
        await _until(lambda: fake_engine.entered == 2)
        coordinator.cancel()
        fake_engine.gate.set()
        report = await task

        assert report.status is RunStatus.CANCELLED
        succeeded = [b for b in report.batches if b.status == "succeeded"]
        assert len(succeeded) == 2
        assert report.counters.records_seen < 10_000

        queued = [dl for dl in report.dead_letters if dl.archive_uri is None]
        assert queued
        assert {dl.reason for dl in queued} == {"cancelled"}
        assert all(dl.source_end > dl.source_start for dl in queued)
        assert len(fake_store.objects) == 2
        _assert_all_settled(report)

    async def test_run_fatal_aborts(self, make_coordinator, make_records, fake_engine):
        fake_engine.responder = lambda doc, call: (401, "security_exception")

        report = await make_coordinator().run(MemoryRecordSource(make_records(20_000)))

        assert report.status is RunStatus.ABORTED
        assert report.fatal_error
        assert report.counters.documents_indexed == 0
        assert report.counters.records_seen < 20_000
        assert {dl.reason for dl in report.dead_letters} == {"run_aborted"}
        assert {dl.error_class for dl in report.dead_letters} == {"RunFatalError"}
        _assert_all_settled(report)

    async def test_source_failure_aborts(self, make_coordinator):
        source = CsvRecordSource(_chunks(b"name,id\nA,1\n"), description="bad.csv")

        report = await make_coordinator().run(source)

        assert report.status is RunStatus.ABORTED
        assert "missing required column" in report.fatal_error
        assert report.batches == []

    async def test_records_read_before_source_failure_are_indexed(
        self, make_coordinator, make_records, fake_store,
    ):
        report = await make_coordinator().run(_FlakySource(make_records(1500)))

        assert report.status is RunStatus.ABORTED
        assert "connection reset" in report.fatal_error
        assert sorted(b.sequence for b in report.batches) == [1, 2]
        c = report.counters
        assert c.records_seen == 1500
        assert c.records_archived == 1500
        assert c.documents_indexed == 1500
        assert report.dead_letters == []
        assert len(fake_store.objects) == 2
        _assert_all_settled(report)

    async def test_source_failure_drains_queued_batches(
        self, make_coordinator, make_records, fake_engine, fake_store,
    ):
        fake_engine.gate = asyncio.Event()
        fake_engine.responder = lambda doc, call: 503 if call == 3 else 201
        coordinator = make_coordinator(pool_size=2)

        task = asyncio.create_task(coordinator.run(_FlakySource(make_records(5500))))
        await _until(lambda: coordinator.control.source_error is not None)
        fake_engine.gate.set()
        report = await task

        assert report.status is RunStatus.ABORTED
        assert "connection reset" in report.fatal_error
        c = report.counters
        assert c.records_seen == 5500
        assert c.records_archived == 5500
        assert c.documents_indexed == 5500
        assert c.documents_retried == 1000
        assert c.documents_dead_lettered == 0
        by_seq = {b.sequence: b for b in report.batches}
        assert sorted(by_seq) == [1, 2, 3, 4, 5, 6]
        assert by_seq[6].document_count == 500
        assert all(b.archive_key for b in report.batches)
        assert len(fake_store.objects) == 6
        _assert_all_settled(report)

    async def test_source_failure_with_rejected_documents_keeps_archive(
        self, make_coordinator, make_records, fake_engine,
    ):
        records = make_records(1500)
        bad = document_id_for(records[1200])
        fake_engine.responder = lambda doc, call: (400, "mapper_parsing_exception") if doc.document_id == bad else 201

        report = await make_coordinator().run(_FlakySource(records))

        assert report.status is RunStatus.ABORTED
        c = report.counters
        assert c.documents_indexed + c.documents_dead_lettered == c.records_seen == 1500
        [entry] = report.dead_letters
        assert entry.document_id == bad
        assert entry.reason == "non_retriable"
        assert entry.archive_uri.endswith("/batch-000002.ndjson")

    async def test_cancel_while_source_stalled(self, make_coordinator, make_records):
        source = _StalledSource(make_records(1000))
        coordinator = make_coordinator()

        task = asyncio.create_task(coordinator.run(source))
        await _until(lambda: coordinator.progress().batches_settled == 1)
        coordinator.cancel()
        report = await asyncio.wait_for(task, timeout=2)

        assert report.status is RunStatus.CANCELLED
        assert report.counters.records_seen == 1000
        assert report.counters.documents_indexed == 1000
        assert report.dead_letters == []
        assert source.closed
        _assert_all_settled(report)

    async def test_malformed_records_counted(self, make_coordinator):
        body = b'[{"mobile":"9800000001","name":"A","id":"X1"}, {"broken": }, {"mobile":"9800000002","name":"B","id":"X2"}]'
        source = JsonRecordSource(_chunks(body), description="dump.json")

        report = await make_coordinator().run(source)

        assert report.status is RunStatus.SUCCEEDED
        assert report.counters.malformed_skipped == 1
        assert report.counters.documents_indexed == 2
