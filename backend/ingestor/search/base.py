"""
Search Engine — Abstract Base

The bulk indexer only speaks this protocol. Implementations translate
their transport failures into the ingestion error taxonomy:

  connection error / timeout / 429 / 5xx   → RetriableIndexError
  401 / 403 / missing index or endpoint    → RunFatalError
  any other 4xx on the request as a whole  → NonRetriableIndexError

Per-document failures are NOT raised; they come back as ItemOutcome
entries and are classified by the BulkIndexer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

from ingestor.schemas.documents import IndexDocument


@dataclass(frozen=True)
class ItemOutcome:
    """Result of one document inside a bulk response."""
    document_id:  str
    status:       int
    error_type:   str | None = None
    error_reason: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300 and self.error_type is None


class SearchEngine(ABC):

    @abstractmethod
    async def bulk(self, documents: Sequence[IndexDocument]) -> list[ItemOutcome]:
        """Index `documents` in one request; one outcome per document, in order."""

    @abstractmethod
    async def apply_index_template(self) -> None:
        """Install the people index template (idempotent)."""

    @abstractmethod
    async def ensure_index(self) -> None:
        """Create the target index tuned for bulk load (idempotent)."""

    @abstractmethod
    async def finalize_index(self) -> None:
        """Restore replicas and refresh after the load."""

    async def aclose(self) -> None:
        """Release connections."""
