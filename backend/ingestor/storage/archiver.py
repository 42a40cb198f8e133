"""
Batch Archiver — durability before indexing.

Every RawBatch is written to object storage before its first bulk-index
attempt, establishing a replay point. Archival has its own small, fixed
retry budget (ARCHIVE_MAX_ATTEMPTS, ARCHIVE_RETRY_DELAY_SECONDS) that is
independent of the bulk-indexing retry policy; when it is exhausted the
batch is failed without ever being indexed.

Errors that mean the bucket itself is unusable (bad credentials, missing
bucket) are raised as RunFatalError on the first occurrence — retrying
every batch against a dead destination would only delay the abort.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable

from botocore.exceptions import BotoCoreError, ClientError

from ingestor.core.config import Settings, settings as default_settings
from ingestor.core.errors import ArchiveError, RunFatalError
from ingestor.pipeline.batch import RawBatch
from ingestor.pipeline.retry import wait_or_cancel
from ingestor.storage.base import ArchiveLocation, ObjectStore

logger = logging.getLogger(__name__)

NDJSON_CONTENT_TYPE = "application/x-ndjson"

_FATAL_S3_CODES: frozenset[str] = frozenset(
    {
        "AccessDenied",
        "InvalidAccessKeyId",
        "SignatureDoesNotMatch",
        "NoSuchBucket",
        "ExpiredToken",
    }
)


def serialize_batch(batch: RawBatch) -> bytes:
    """One raw record per line, exactly as read from the source."""
    lines = (
        json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)
        for record in batch.records
    )
    return ("\n".join(lines) + "\n").encode("utf-8")


def deserialize_batch(body: bytes) -> list[dict]:
    return [json.loads(line) for line in body.decode("utf-8").splitlines() if line.strip()]


class BatchArchiver:
    def __init__(
        self,
        store: ObjectStore,
        cfg: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        cfg = cfg or default_settings
        self._store = store
        self._prefix = cfg.s3_upload_prefix
        if self._prefix and not self._prefix.endswith("/"):
            self._prefix += "/"
        self._max_attempts = cfg.archive_max_attempts
        self._retry_delay = cfg.archive_retry_delay_seconds
        self._timeout = cfg.archive_timeout_seconds or None
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def batch_key(self, run_id: str, sequence: int) -> str:
        return f"{self._prefix}{run_id}/batch-{sequence:06d}.ndjson"

    def report_key(self, run_id: str) -> str:
        return f"{self._prefix}{run_id}/report.json"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def archive(
        self,
        run_id: str,
        batch: RawBatch,
        stop_event: asyncio.Event | None = None,
    ) -> ArchiveLocation:
        """
        Upload one batch under the run-scoped key.

        When `stop_event` is given, a run stop interrupts the delay between
        attempts and no further attempt is made.

        Raises:
            ArchiveError:  upload failed on every attempt.
            RunFatalError: the bucket rejected our credentials or does not exist.
        """
        key = self.batch_key(run_id, batch.sequence)
        body = serialize_batch(batch)
        metadata = {
            "run-id":         run_id,
            "batch-sequence": str(batch.sequence),
            "record-count":   str(len(batch)),
            "source-start":   str(batch.start_offset),
            "source-end":     str(batch.end_offset),
        }

        location = await self._put_with_retry(key, body, NDJSON_CONTENT_TYPE, metadata, stop_event)
        logger.info(
            "Batch archived | run=%s batch=%d records=%d key=%s",
            run_id, batch.sequence, len(batch), key,
        )
        return location

    async def archive_report(self, run_id: str, body: bytes) -> ArchiveLocation:
        return await self._put_with_retry(
            self.report_key(run_id), body, "application/json", {"run-id": run_id},
        )

    async def _put_with_retry(
        self,
        key: str,
        body: bytes,
        content_type: str,
        metadata: dict[str, str],
        stop_event: asyncio.Event | None = None,
    ) -> ArchiveLocation:
        last_exc: Exception | None = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                return await asyncio.wait_for(
                    self._store.put(key, body, content_type=content_type, metadata=metadata),
                    timeout=self._timeout,
                )
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code", "")
                if code in _FATAL_S3_CODES:
                    raise RunFatalError(f"archive destination unusable ({code}): {exc}") from exc
                last_exc = exc
            except (BotoCoreError, asyncio.TimeoutError) as exc:
                last_exc = exc

            logger.warning(
                "Archive attempt failed | key=%s attempt=%d/%d error=%s",
                key, attempt, self._max_attempts, type(last_exc).__name__,
            )
            if attempt == self._max_attempts:
                break
            if stop_event is None:
                await self._sleep(self._retry_delay)
            elif await wait_or_cancel(stop_event, self._retry_delay):
                raise ArchiveError(
                    f"archive of {key} interrupted by run stop after {attempt} attempts: {last_exc!r}",
                    key=key,
                    attempts=attempt,
                ) from last_exc

        raise ArchiveError(
            f"archive of {key} failed after {self._max_attempts} attempts: {last_exc!r}",
            key=key,
            attempts=self._max_attempts,
        ) from last_exc
