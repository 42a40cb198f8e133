"""
Record source resolution.

    source = open_source("s3://bucket/dump.json")
    source = open_source("/data/people.csv", fmt="csv", region="delhi-ncr")
    source = open_source("-", resume=120_000)
"""

from __future__ import annotations

from ingestor.core.config import Settings
from ingestor.source.records import (
    CsvRecordSource,
    JsonObjectScanner,
    JsonRecordSource,
    MemoryRecordSource,
    RecordSource,
)
from ingestor.source.streams import open_byte_stream, parse_s3_uri


def detect_format(location: str) -> str:
    return "csv" if location.lower().endswith(".csv") else "json"


def open_source(
    location: str,
    fmt: str = "auto",
    region: str | None = None,
    resume: int = 0,
    cfg: Settings | None = None,
) -> RecordSource:
    """Build a RecordSource for a local path, "-" (stdin) or s3:// URI."""
    if location.startswith("s3://"):
        parse_s3_uri(location)   # fail fast on a malformed URI
    if fmt == "auto":
        fmt = detect_format(location)

    def chunks():
        return open_byte_stream(location, cfg)

    if fmt == "csv":
        return CsvRecordSource(chunks, description=location, region=region, resume=resume)
    if fmt == "json":
        return JsonRecordSource(chunks, description=location, resume=resume)
    raise ValueError(f"unknown source format: {fmt!r} (expected auto, json or csv)")


__all__ = [
    "CsvRecordSource",
    "JsonObjectScanner",
    "JsonRecordSource",
    "MemoryRecordSource",
    "RecordSource",
    "detect_format",
    "open_source",
]
