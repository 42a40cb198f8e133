"""
Byte streams for record sources: local file, stdin, S3 object.

Every stream is an async iterator of raw byte chunks. Local file reads are
synchronous under the hood, so they are offloaded to the default thread
pool executor to avoid blocking the event loop on multi-GB inputs. A stdin
pipe is read through the event loop instead.
S3 objects are streamed with aioboto3 — the body is never fully buffered.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import AsyncIterator, BinaryIO

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from ingestor.core.config import Settings, settings as default_settings
from ingestor.core.errors import SourceReadError

logger = logging.getLogger(__name__)

CHUNK_SIZE: int = 1024 * 1024   # 1 MB reads


def parse_s3_uri(uri: str) -> tuple[str, str]:
    """Split s3://bucket/key into (bucket, key)."""
    trimmed = uri.removeprefix("s3://")
    bucket, _, key = trimmed.partition("/")
    if not bucket or not key:
        raise ValueError(f"invalid S3 URI: {uri}")
    return bucket, key


async def _iter_handle(handle: BinaryIO, chunk_size: int) -> AsyncIterator[bytes]:
    loop = asyncio.get_running_loop()
    while True:
        chunk: bytes = await loop.run_in_executor(None, handle.read, chunk_size)
        if not chunk:
            break
        yield chunk


async def iter_file_chunks(path: str, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
    try:
        handle = open(path, "rb")
    except OSError as exc:
        raise SourceReadError(f"error opening file {path}: {exc}") from exc

    logger.info("Reading input from local file | path=%s", path)
    with handle:
        async for chunk in _iter_handle(handle, chunk_size):
            yield chunk


async def iter_stdin_chunks(
    chunk_size: int = CHUNK_SIZE,
    stream: BinaryIO | None = None,
) -> AsyncIterator[bytes]:
    """
    Pipes are read through the event loop so an idle writer never pins an
    executor thread; a stop can abandon the read at any time. A regular
    file redirected to stdin falls back to executor reads.
    """
    stream = stream or sys.stdin.buffer
    logger.info("Reading input from stdin")
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=chunk_size)
    try:
        transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), stream,
        )
    except (ValueError, NotImplementedError):
        async for chunk in _iter_handle(stream, chunk_size):
            yield chunk
        return

    try:
        while True:
            chunk = await reader.read(chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        transport.close()


async def iter_s3_chunks(
    bucket: str,
    key: str,
    cfg: Settings | None = None,
    chunk_size: int = CHUNK_SIZE,
) -> AsyncIterator[bytes]:
    cfg = cfg or default_settings
    session = aioboto3.Session(
        aws_access_key_id=cfg.aws_access_key_id or None,
        aws_secret_access_key=cfg.aws_secret_access_key or None,
        region_name=cfg.aws_region,
    )
    async with session.client("s3", region_name=cfg.aws_region) as s3:
        try:
            resp = await s3.get_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            raise SourceReadError(f"error fetching S3 object {bucket}/{key}: {exc}") from exc

        logger.info(
            "Opened S3 object stream | uri=s3://%s/%s content_length=%s",
            bucket, key, resp.get("ContentLength"),
        )
        body = resp["Body"]
        while True:
            try:
                chunk = await body.read(chunk_size)
            except (BotoCoreError, ClientError) as exc:
                raise SourceReadError(f"error reading S3 object {bucket}/{key}: {exc}") from exc
            if not chunk:
                break
            yield chunk


def open_byte_stream(location: str, cfg: Settings | None = None) -> AsyncIterator[bytes]:
    """Resolve "-" (stdin), "s3://bucket/key" or a local path to a chunk stream."""
    if location == "-":
        return iter_stdin_chunks()
    if location.startswith("s3://"):
        bucket, key = parse_s3_uri(location)
        return iter_s3_chunks(bucket, key, cfg)
    return iter_file_chunks(location)
