"""
S3 Object Store — raw batch archive

Layout:
    s3://<S3_UPLOAD_BUCKET>/<S3_UPLOAD_PREFIX><run_id>/batch-000001.ndjson
    s3://<S3_UPLOAD_BUCKET>/<S3_UPLOAD_PREFIX><run_id>/report.json

Keys are always constructed server-side from the run id and batch
sequence number; nothing from the record payload ends up in a key.

Object lifecycle:
  - Every archived batch is written once and never mutated.
  - Replays read archived batches back through get().
  - Expiry is handled by bucket lifecycle rules, not by this service.
"""

from __future__ import annotations

import logging

import aioboto3
from botocore.exceptions import ClientError

from ingestor.core.config import Settings, settings as default_settings
from ingestor.observability import traced
from ingestor.storage.base import ArchiveLocation, ObjectStore

logger = logging.getLogger(__name__)


class S3ObjectStore(ObjectStore):
    """
    Async S3 put/get bound to one bucket.

    aioboto3 clients are not shared between coroutines; a scoped client is
    opened per call, which keeps workers fully independent.
    """

    def __init__(self, cfg: Settings | None = None, bucket: str | None = None) -> None:
        self._cfg = cfg or default_settings
        self._bucket = bucket or self._cfg.s3_upload_bucket
        if not self._bucket:
            raise ValueError("S3_UPLOAD_BUCKET is not configured")
        self._session = aioboto3.Session(
            aws_access_key_id=self._cfg.aws_access_key_id or None,
            aws_secret_access_key=self._cfg.aws_secret_access_key or None,
            region_name=self._cfg.aws_region,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._cfg.aws_region)

    @traced("s3.put_object")
    async def put(
        self,
        key: str,
        body: bytes,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> ArchiveLocation:
        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                Metadata=metadata or {},
            )

        logger.debug("S3 upload ok | key=%s size=%d", key, len(body))
        return ArchiveLocation(
            bucket=self._bucket,
            key=key,
            size_bytes=len(body),
            etag=resp.get("ETag", "").strip('"'),
            version_id=resp.get("VersionId"),
        )

    @traced("s3.get_object")
    async def get(self, key: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise
