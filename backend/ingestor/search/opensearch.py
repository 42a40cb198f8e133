"""
OpenSearch client — bulk API over httpx.

Bulk body (NDJSON, one action + one source line per document):
    {"index": {"_index": "people-dev-0001", "_id": "<document_id>"}}
    {"name": "...", "fname": "...", "mobile": "...", ...}

Index lifecycle around a load:
  1. apply_index_template()  people_v1 template (mappings + analyzers)
  2. ensure_index()          N shards, 0 replicas, refresh disabled
  3. ... bulk load ...
  4. finalize_index()        replicas restored, refresh 1s

Every request carries the per-call timeout from BULK_TIMEOUT_SECONDS; a
timeout is a retriable transport failure, never fatal on its own.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

import httpx

from ingestor.core.config import Settings, settings as default_settings
from ingestor.core.errors import NonRetriableIndexError, RetriableIndexError, RunFatalError
from ingestor.observability import traced
from ingestor.schemas.documents import IndexDocument
from ingestor.search.base import ItemOutcome, SearchEngine
from ingestor.search.templates import PEOPLE_TEMPLATE, PEOPLE_TEMPLATE_NAME

logger = logging.getLogger(__name__)

NDJSON = "application/x-ndjson"


def _error_of(resp: httpx.Response) -> tuple[str, str]:
    """(type, reason) from an OpenSearch error body, best effort."""
    try:
        body = resp.json()
    except ValueError:
        return f"http_{resp.status_code}", resp.text[:200]
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        return str(err.get("type", f"http_{resp.status_code}")), str(err.get("reason", ""))
    if isinstance(err, str):
        return f"http_{resp.status_code}", err
    return f"http_{resp.status_code}", resp.text[:200]


def raise_for_request_status(resp: httpx.Response, action: str) -> None:
    """Translate a request-level HTTP failure into the ingestion taxonomy."""
    code = resp.status_code
    if code < 400:
        return
    err_type, reason = _error_of(resp)
    message = f"{action} failed ({code} {err_type}): {reason}"
    if code in (401, 403, 404):
        raise RunFatalError(message)
    if code == 429 or code >= 500:
        raise RetriableIndexError(message, status_code=code, reason=err_type)
    raise NonRetriableIndexError(message, status_code=code, reason=err_type)


class OpenSearchClient(SearchEngine):
    """
    Thin async client for the handful of OpenSearch endpoints ingestion needs.

    `transport` lets tests inject httpx.MockTransport; production uses the
    default connection pool.
    """

    def __init__(
        self,
        cfg: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._cfg = cfg or default_settings
        if not self._cfg.opensearch_endpoint:
            raise ValueError("OPENSEARCH_ENDPOINT is not configured")
        self._index = self._cfg.opensearch_index

        auth = None
        if self._cfg.opensearch_master_user:
            auth = httpx.BasicAuth(self._cfg.opensearch_master_user, self._cfg.opensearch_master_password)

        self._http = httpx.AsyncClient(
            base_url=self._cfg.opensearch_endpoint.rstrip("/"),
            auth=auth,
            timeout=httpx.Timeout(self._cfg.bulk_timeout_seconds or None),
            verify=self._cfg.opensearch_verify_tls,
            transport=transport,
        )

    @property
    def index(self) -> str:
        return self._index

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, action: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise RetriableIndexError(
                f"{action} timed out: {exc!r}", reason=type(exc).__name__,
            ) from exc
        except httpx.TransportError as exc:
            raise RetriableIndexError(
                f"{action} transport error: {exc!r}", reason=type(exc).__name__,
            ) from exc

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def _bulk_body(self, documents: Sequence[IndexDocument]) -> bytes:
        lines: list[str] = []
        for doc in documents:
            lines.append(json.dumps({"index": {"_index": self._index, "_id": doc.document_id}}))
            lines.append(json.dumps(doc.source(), ensure_ascii=False))
        return ("\n".join(lines) + "\n").encode("utf-8")

    @traced("opensearch.bulk")
    async def bulk(self, documents: Sequence[IndexDocument]) -> list[ItemOutcome]:
        if not documents:
            return []

        resp = await self._request(
            "POST", "/_bulk", "bulk request",
            content=self._bulk_body(documents),
            headers={"Content-Type": NDJSON},
        )
        raise_for_request_status(resp, "bulk request")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise RetriableIndexError(
                f"bulk response was not JSON: {resp.text[:200]!r}", reason="invalid_response",
            ) from exc

        items = payload.get("items") or []
        if len(items) != len(documents):
            raise RetriableIndexError(
                f"bulk response has {len(items)} items for {len(documents)} documents",
                reason="item_count_mismatch",
            )

        outcomes: list[ItemOutcome] = []
        for doc, item in zip(documents, items):
            result = next(iter(item.values()), {}) if isinstance(item, dict) else {}
            error = result.get("error")
            error_type = error_reason = None
            if isinstance(error, dict):
                error_type = str(error.get("type", "unknown"))
                error_reason = str(error.get("reason", ""))
            elif error:
                error_type, error_reason = "unknown", str(error)
            outcomes.append(
                ItemOutcome(
                    document_id=doc.document_id,
                    status=int(result.get("status", 0) or 0),
                    error_type=error_type,
                    error_reason=error_reason,
                )
            )
        return outcomes

    # ------------------------------------------------------------------
    # Index lifecycle
    # ------------------------------------------------------------------

    async def apply_index_template(self) -> None:
        resp = await self._request(
            "PUT", f"/_index_template/{PEOPLE_TEMPLATE_NAME}", "apply index template",
            json=PEOPLE_TEMPLATE,
        )
        if resp.status_code == 400 and "already exists" in resp.text:
            logger.info("Index template %s already exists; skipping creation", PEOPLE_TEMPLATE_NAME)
            return
        raise_for_request_status(resp, "apply index template")
        logger.info("Index template applied | name=%s", PEOPLE_TEMPLATE_NAME)

    async def ensure_index(self) -> None:
        body = {
            "settings": {
                "number_of_shards":   self._cfg.index_shards,
                "number_of_replicas": 0,
                "refresh_interval":   "-1",
            }
        }
        resp = await self._request("PUT", f"/{self._index}", "create index", json=body)
        if resp.status_code == 400 and "resource_already_exists_exception" in resp.text:
            logger.info("Index %s already exists; skipping creation", self._index)
            return
        raise_for_request_status(resp, "create index")
        logger.info("Index created | index=%s shards=%d", self._index, self._cfg.index_shards)

    async def finalize_index(self) -> None:
        body = {
            "index": {
                "number_of_replicas": self._cfg.index_final_replicas,
                "refresh_interval":   "1s",
            }
        }
        resp = await self._request("PUT", f"/{self._index}/_settings", "finalize index", json=body)
        raise_for_request_status(resp, "finalize index")
        logger.info(
            "Index finalized | index=%s replicas=%d refresh=1s",
            self._index, self._cfg.index_final_replicas,
        )
