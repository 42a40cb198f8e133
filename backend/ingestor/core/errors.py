"""
Ingestion error taxonomy.

Scope of each error decides who handles it:

  SourceReadError         run    — the record source failed; nothing left to process
  ArchiveError            batch  — raw batch could not be archived; never indexed
  RetriableIndexError     batch  — transient search-engine failure; retry policy applies
  NonRetriableIndexError  batch  — request rejected; documents dead-lettered, no retry
  RunFatalError           run    — destination unusable (auth, missing index/bucket);
                                   dispatch stops, in-flight batches settle

Adapters translate transport exceptions (botocore, httpx) into these
classes with `raise ... from exc` so the original cause stays attached.
"""

from __future__ import annotations


class IngestError(Exception):
    """Base class for every pipeline error."""

    @property
    def error_class(self) -> str:
        return type(self).__name__


class SourceReadError(IngestError):
    """The underlying record source raised while being read."""


class ArchiveError(IngestError):
    """Uploading a raw batch to object storage failed after all attempts."""

    def __init__(self, message: str, *, key: str | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.key = key
        self.attempts = attempts


class IndexingError(IngestError):
    """Base for bulk-index failures that carry an HTTP status when known."""

    def __init__(self, message: str, *, status_code: int | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class RetriableIndexError(IndexingError):
    """Connection failure, timeout, 429 or 5xx."""


class NonRetriableIndexError(IndexingError):
    """Malformed request or document, mapping conflict, 4xx other than 429."""


class RunFatalError(IngestError):
    """Credentials rejected or destination missing; aborts the whole run."""
