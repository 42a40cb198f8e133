"""
Unit Tests — OpenSearch client
═══════════════════════════════
Tests for ingestor/search/opensearch.py (httpx.MockTransport, no network)

Coverage:
  ✅ Bulk body is NDJSON: action line with _index/_id, then the document
  ✅ Per-item outcomes are returned in submission order
  ✅ Request-level 429 / 5xx / timeouts / connect errors → RetriableIndexError
  ✅ Request-level 401 / 403 / 404 → RunFatalError
  ✅ Other request-level 4xx → NonRetriableIndexError
  ✅ Template and index creation are idempotent ("already exists" is ok)
  ✅ Index is created bulk-tuned and finalized with replicas + refresh
  ✅ Basic auth header is sent when a master user is configured
"""

from __future__ import annotations

import json

import httpx
import pytest

from ingestor.core.errors import NonRetriableIndexError, RetriableIndexError, RunFatalError
from ingestor.search.mapping import to_index_document
from ingestor.search.opensearch import OpenSearchClient


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _docs(make_records, n: int):
    return [to_index_document(r) for r in make_records(n)]


def _client(test_settings, handler, **overrides) -> OpenSearchClient:
    cfg = test_settings.model_copy(update=overrides) if overrides else test_settings
    return OpenSearchClient(cfg, transport=httpx.MockTransport(handler))


def _bulk_response(statuses: list[int]) -> dict:
    items = []
    for status in statuses:
        result: dict = {"status": status}
        if status >= 300:
            result["error"] = {"type": "mapper_parsing_exception", "reason": "bad field"}
        items.append({"index": result})
    return {"took": 3, "errors": any(s >= 300 for s in statuses), "items": items}


# ─────────────────────────────────────────────────────────────────────────────
# Bulk
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.search
class TestBulk:

    async def test_bulk_body_is_ndjson(self, test_settings, make_records):
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["content_type"] = request.headers["content-type"]
            captured["lines"] = request.content.decode().splitlines()
            return httpx.Response(200, json=_bulk_response([201, 201]))

        docs = _docs(make_records, 2)
        client = _client(test_settings, handler)
        await client.bulk(docs)
        await client.aclose()

        assert captured["path"] == "/_bulk"
        assert captured["content_type"] == "application/x-ndjson"
        lines = [json.loads(line) for line in captured["lines"]]
        assert lines[0] == {"index": {"_index": "people-test-0001", "_id": docs[0].document_id}}
        assert lines[1]["name"] == docs[0].name
        assert lines[2]["index"]["_id"] == docs[1].document_id
        assert len(lines) == 4

    async def test_item_outcomes_in_order(self, test_settings, make_records):
        def handler(request):
            return httpx.Response(200, json=_bulk_response([201, 400, 429]))

        docs = _docs(make_records, 3)
        outcomes = await _client(test_settings, handler).bulk(docs)

        assert [o.document_id for o in outcomes] == [d.document_id for d in docs]
        assert [o.status for o in outcomes] == [201, 400, 429]
        assert outcomes[0].ok
        assert outcomes[1].error_type == "mapper_parsing_exception"
        assert not outcomes[2].ok

    async def test_empty_bulk_sends_nothing(self, test_settings):
        def handler(request):
            raise AssertionError("no request expected")

        assert await _client(test_settings, handler).bulk([]) == []

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    async def test_retriable_request_status(self, test_settings, make_records, status):
        def handler(request):
            return httpx.Response(status, json={"error": {"type": "busy", "reason": "later"}})

        with pytest.raises(RetriableIndexError) as exc_info:
            await _client(test_settings, handler).bulk(_docs(make_records, 1))
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize("status", [401, 403, 404])
    async def test_fatal_request_status(self, test_settings, make_records, status):
        def handler(request):
            return httpx.Response(status, json={"error": {"type": "security_exception", "reason": "no"}})

        with pytest.raises(RunFatalError):
            await _client(test_settings, handler).bulk(_docs(make_records, 1))

    async def test_other_4xx_is_non_retriable(self, test_settings, make_records):
        def handler(request):
            return httpx.Response(400, json={"error": {"type": "illegal_argument_exception", "reason": "x"}})

        with pytest.raises(NonRetriableIndexError) as exc_info:
            await _client(test_settings, handler).bulk(_docs(make_records, 1))
        assert exc_info.value.reason == "illegal_argument_exception"

    @pytest.mark.parametrize("exc", [
        httpx.ReadTimeout("slow"),
        httpx.ConnectError("refused"),
    ])
    async def test_transport_errors_are_retriable(self, test_settings, make_records, exc):
        def handler(request):
            raise exc

        with pytest.raises(RetriableIndexError):
            await _client(test_settings, handler).bulk(_docs(make_records, 1))

    async def test_item_count_mismatch_is_retriable(self, test_settings, make_records):
        def handler(request):
            return httpx.Response(200, json=_bulk_response([201]))

        with pytest.raises(RetriableIndexError):
            await _client(test_settings, handler).bulk(_docs(make_records, 2))

    async def test_basic_auth(self, test_settings, make_records):
        seen: dict = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json=_bulk_response([201]))

        client = _client(
            test_settings, handler,
            opensearch_master_user="admin", opensearch_master_password="pw",
        )
        await client.bulk(_docs(make_records, 1))
        assert seen["auth"].startswith("Basic ")


# ─────────────────────────────────────────────────────────────────────────────
# Index lifecycle
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.search
class TestIndexLifecycle:

    async def test_template_applied(self, test_settings):
        seen: list = []

        def handler(request):
            seen.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"acknowledged": True})

        await _client(test_settings, handler).apply_index_template()
        method, path, body = seen[0]
        assert (method, path) == ("PUT", "/_index_template/people_v1")
        assert body["index_patterns"] == ["people-*"]
        assert "fname" in body["template"]["mappings"]["properties"]

    async def test_template_already_exists_is_ok(self, test_settings):
        def handler(request):
            return httpx.Response(400, text='{"error":"index template [people_v1] already exists"}')

        await _client(test_settings, handler).apply_index_template()

    async def test_create_index_bulk_tuned(self, test_settings):
        seen: list = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"acknowledged": True})

        await _client(test_settings, handler).ensure_index()
        path, body = seen[0]
        assert path == "/people-test-0001"
        assert body["settings"] == {
            "number_of_shards": 6,
            "number_of_replicas": 0,
            "refresh_interval": "-1",
        }

    async def test_create_index_already_exists_is_ok(self, test_settings):
        def handler(request):
            return httpx.Response(
                400, json={"error": {"type": "resource_already_exists_exception", "reason": "exists"}},
            )

        await _client(test_settings, handler).ensure_index()

    async def test_finalize_restores_replicas(self, test_settings):
        seen: list = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"acknowledged": True})

        await _client(test_settings, handler).finalize_index()
        assert seen[0] == (
            "/people-test-0001/_settings",
            {"index": {"number_of_replicas": 1, "refresh_interval": "1s"}},
        )

    async def test_finalize_missing_index_is_fatal(self, test_settings):
        def handler(request):
            return httpx.Response(404, json={"error": {"type": "index_not_found_exception", "reason": "x"}})

        with pytest.raises(RunFatalError):
            await _client(test_settings, handler).finalize_index()

    def test_requires_endpoint(self, test_settings):
        cfg = test_settings.model_copy(update={"opensearch_endpoint": ""})
        with pytest.raises(ValueError):
            OpenSearchClient(cfg)
