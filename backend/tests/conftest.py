"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : test_settings, fake_store, fake_engine, service, make_records,
                    app, async_client

Environment strategy:
  - No test talks to AWS or OpenSearch. Pipeline tests run against the
    in-memory FakeObjectStore / FakeSearchEngine below; adapter tests
    mock aioboto3 sessions or inject httpx.MockTransport.
  - Settings are built explicitly per test so clamps and knobs are visible
    at the call site; the environment below only feeds the module-level
    `settings` singleton.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no I/O)
  pytest -m integration           # HTTP tests through the ASGI app
  pytest backend/tests/unit/test_worker.py
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Callable, Sequence

import pytest

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any package imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("AWS_REGION",                    "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",             "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY",         "test")
os.environ.setdefault("S3_UPLOAD_BUCKET",              "test-bucket")
os.environ.setdefault("OPENSEARCH_ENDPOINT",           "http://opensearch.test:9200")
os.environ.setdefault("INGEST_BASE_PARALLELISM",       "2")
os.environ.setdefault("ARCHIVE_RETRY_DELAY_SECONDS",   "0")
os.environ.setdefault("PROGRESS_LOG_INTERVAL_SECONDS", "0")
os.environ.setdefault("APP_ENV",                       "development")

from ingestor.core.config import Settings  # noqa: E402
from ingestor.schemas.documents import IndexDocument  # noqa: E402
from ingestor.search.base import ItemOutcome, SearchEngine  # noqa: E402
from ingestor.storage.base import ArchiveLocation, ObjectStore  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Record helpers
# ─────────────────────────────────────────────────────────────────────────────

def person(i: int, **overrides: Any) -> dict[str, Any]:
    """A distinct, well-formed person record."""
    record = {
        "mobile":  f"98{i:08d}",
        "name":    f"Person {i}",
        "fname":   f"Father {i}",
        "address": f"{i} Ring Road, Delhi",
        "id":      f"ID{i:07d}",
    }
    record.update(overrides)
    return record


@pytest.fixture
def make_records() -> Callable[[int], list[dict[str, Any]]]:
    def _make(n: int, start: int = 0) -> list[dict[str, Any]]:
        return [person(i) for i in range(start, start + n)]
    return _make


# ─────────────────────────────────────────────────────────────────────────────
# In-memory object store
# ─────────────────────────────────────────────────────────────────────────────

class FakeObjectStore(ObjectStore):
    """
    Dict-backed ObjectStore.

    `failures` is a list of exceptions raised by successive put() calls
    before puts start succeeding. `events` is shared with FakeSearchEngine
    so tests can assert ordering between archive and bulk calls.
    """

    def __init__(self, bucket: str = "test-bucket", events: list | None = None) -> None:
        self._bucket = bucket
        self.objects: dict[str, bytes] = {}
        self.metadata: dict[str, dict[str, str]] = {}
        self.failures: list[BaseException] = []
        self.fail_keys: dict[str, BaseException] = {}
        self.put_calls = 0
        self.events = events if events is not None else []

    @property
    def bucket(self) -> str:
        return self._bucket

    async def put(
        self,
        key: str,
        body: bytes,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> ArchiveLocation:
        self.put_calls += 1
        if key in self.fail_keys:
            raise self.fail_keys[key]
        if self.failures:
            raise self.failures.pop(0)
        self.objects[key] = body
        self.metadata[key] = dict(metadata or {})
        self.events.append(("archive", key))
        return ArchiveLocation(bucket=self._bucket, key=key, size_bytes=len(body), etag="etag")

    async def get(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError:
            raise FileNotFoundError(key) from None


# ─────────────────────────────────────────────────────────────────────────────
# In-memory search engine
# ─────────────────────────────────────────────────────────────────────────────

Responder = Callable[[IndexDocument, int], "int | tuple[int, str]"]


class FakeSearchEngine(SearchEngine):
    """
    Records every bulk call and keeps the final indexed state.

    `responder(doc, call_number)` returns an item status (or
    `(status, error_type)`); default is 201 for everything.
    `request_errors` are raised by successive bulk() calls instead.
    `gate`, when set, makes every bulk() call after the first `gate_after`
    wait on it (cancellation tests); `entered` counts calls that reached it.
    """

    def __init__(self, events: list | None = None, responder: Responder | None = None) -> None:
        self.responder = responder
        self.request_errors: list[BaseException] = []
        self.calls: list[list[str]] = []
        self.indexed: dict[str, dict] = {}
        self.index_writes: dict[str, int] = {}
        self.events = events if events is not None else []
        self.gate: asyncio.Event | None = None
        self.gate_after = 0
        self.entered = 0
        self.template_applied = False
        self.index_created = False
        self.finalized = False
        self.closed = False

    async def bulk(self, documents: Sequence[IndexDocument]) -> list[ItemOutcome]:
        call_number = len(self.calls) + 1
        self.calls.append([d.document_id for d in documents])
        self.events.append(("bulk", tuple(d.document_id for d in documents)))

        if self.gate is not None and call_number > self.gate_after:
            self.entered += 1
            await self.gate.wait()

        if self.request_errors:
            raise self.request_errors.pop(0)

        outcomes = []
        for doc in documents:
            result = self.responder(doc, call_number) if self.responder else 201
            status, error_type = (result if isinstance(result, tuple) else (result, None))
            if 200 <= status < 300:
                self.indexed[doc.document_id] = doc.source()
                self.index_writes[doc.document_id] = self.index_writes.get(doc.document_id, 0) + 1
            elif error_type is None:
                error_type = "es_rejected_execution_exception" if status == 429 else "failure"
            outcomes.append(ItemOutcome(doc.document_id, status, error_type, None if status < 300 else "test"))
        return outcomes

    async def apply_index_template(self) -> None:
        self.template_applied = True

    async def ensure_index(self) -> None:
        self.index_created = True

    async def finalize_index(self) -> None:
        self.finalized = True

    async def aclose(self) -> None:
        self.closed = True


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        s3_upload_bucket="test-bucket",
        s3_upload_prefix="ingest/raw/",
        opensearch_endpoint="http://opensearch.test:9200",
        opensearch_index="people-test-0001",
        ingest_batch_size=1000,
        ingest_worker_multiplier=2,
        ingest_base_parallelism=1,
        opensearch_bulk_max_attempts=3,
        opensearch_bulk_retry_base=0.01,
        ingest_retry_jitter_fraction=0.0,
        archive_max_attempts=3,
        archive_retry_delay_seconds=0,
        archive_timeout_seconds=5,
        progress_log_interval_seconds=0,
    )


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def fake_store(events) -> FakeObjectStore:
    return FakeObjectStore(events=events)


@pytest.fixture
def fake_engine(events) -> FakeSearchEngine:
    return FakeSearchEngine(events=events)


@pytest.fixture
def service(test_settings, fake_store, fake_engine):
    from ingestor.services.ingestion import IngestionService
    return IngestionService(test_settings, store=fake_store, engine=fake_engine)


@pytest.fixture
def app(service):
    """ASGI app wired to the fake-backed service (lifespan not run)."""
    from ingestor.main import create_app
    return create_app(service=service)


@pytest.fixture
async def async_client(app):
    """httpx AsyncClient over ASGITransport, sharing the test's event loop."""
    from httpx import ASGITransport, AsyncClient
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
