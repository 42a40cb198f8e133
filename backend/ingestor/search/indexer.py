"""
Bulk Indexer — one `_bulk` call, classified per document.

  item 2xx                                  → succeeded
  item 429 / 5xx                            → retriable
  item 401 / 403, 404 index_not_found       → RunFatalError (whole run)
  any other item 4xx                        → non-retriable

Request-level failures apply to every submitted document:
  RetriableIndexError     → all retriable
  NonRetriableIndexError  → all non-retriable
  RunFatalError           → propagates
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from ingestor.core.errors import NonRetriableIndexError, RetriableIndexError, RunFatalError
from ingestor.schemas.documents import IndexDocument
from ingestor.search.base import ItemOutcome, SearchEngine

logger = logging.getLogger(__name__)


@dataclass
class BulkOutcome:
    """Document ids by class; failures map id → error class."""
    succeeded:     list[str] = field(default_factory=list)
    retriable:     dict[str, str] = field(default_factory=dict)
    non_retriable: dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> int:
        return len(self.retriable) + len(self.non_retriable)


def _is_fatal(item: ItemOutcome) -> bool:
    if item.status in (401, 403):
        return True
    return item.status == 404 and item.error_type == "index_not_found_exception"


def _is_retriable(item: ItemOutcome) -> bool:
    return item.status == 429 or item.status >= 500 or item.status == 0


class BulkIndexer:
    def __init__(self, engine: SearchEngine) -> None:
        self._engine = engine

    async def index(self, documents: Sequence[IndexDocument]) -> BulkOutcome:
        outcome = BulkOutcome()
        if not documents:
            return outcome

        try:
            items = await self._engine.bulk(documents)
        except RetriableIndexError as exc:
            outcome.retriable = {d.document_id: exc.error_class for d in documents}
            return outcome
        except NonRetriableIndexError as exc:
            outcome.non_retriable = {d.document_id: exc.error_class for d in documents}
            return outcome

        for item in items:
            if item.ok:
                outcome.succeeded.append(item.document_id)
            elif _is_fatal(item):
                raise RunFatalError(
                    f"index rejected document {item.document_id} "
                    f"({item.status} {item.error_type}): {item.error_reason}"
                )
            elif _is_retriable(item):
                outcome.retriable[item.document_id] = item.error_type or f"http_{item.status}"
            else:
                outcome.non_retriable[item.document_id] = item.error_type or f"http_{item.status}"

        if outcome.failed:
            logger.info(
                "Bulk partial failure | submitted=%d ok=%d retriable=%d non_retriable=%d",
                len(documents), len(outcome.succeeded),
                len(outcome.retriable), len(outcome.non_retriable),
            )
        return outcome
