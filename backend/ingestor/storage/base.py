"""
Object Store — Abstract Base

The archiver only speaks this protocol, so the S3 backend can be swapped
for a local or in-memory store (tests, air-gapped replays) without
touching pipeline code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class ArchiveLocation:
    """Where a raw batch (or run report) was stored."""
    bucket:     str
    key:        str
    size_bytes: int = 0
    etag:       str = ""
    version_id: str | None = None

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


class ObjectStore(ABC):
    """Minimal put/get store used for archival, report persistence and replay."""

    @property
    @abstractmethod
    def bucket(self) -> str:
        """Bucket (or root) that every key is relative to."""

    @abstractmethod
    async def put(
        self,
        key: str,
        body: bytes,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> ArchiveLocation:
        """Store `body` under `key`. Raises the backend's transport error on failure."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the object stored under `key`. Raises FileNotFoundError if absent."""
