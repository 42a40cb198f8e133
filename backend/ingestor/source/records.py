"""
Record Sources — lazy, ordered, finite streams of raw person records.

Supported inputs:
  - JSON array of objects                 [ {...}, {...} ]
  - concatenated / newline-delimited objects  {...}\n{...}
  - CSV with a header row (see CsvRecordSource)

JSON is scanned at the byte level: top-level objects are cut out by brace
depth (string-aware), then decoded one by one. A malformed object is
skipped and counted; it never aborts the stream. Because the scanner works
on bytes, every record knows the exact [start, end) byte range it came from,
which is carried onto RawBatch for replay.

Sources are single-pass: iterating a RecordSource twice is an error.
"""

from __future__ import annotations

import csv
import json
import logging
from typing import Any, AsyncIterator, Callable, Iterable

from ingestor.core.errors import SourceReadError
from ingestor.pipeline.batch import SourceRecord

logger = logging.getLogger(__name__)

ChunkFactory = Callable[[], AsyncIterator[bytes]]

_BOM = b"\xef\xbb\xbf"
_OPEN, _CLOSE, _QUOTE, _BACKSLASH = ord("{"), ord("}"), ord('"'), ord("\\")

CSV_REQUIRED_COLUMNS: tuple[str, ...] = ("mobile", "name", "fname", "address", "id")
CSV_REQUIRED_VALUES: tuple[str, ...] = ("mobile", "name", "id")


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------

class RecordSource:
    """
    Async iterable of SourceRecord.

    Subclasses implement `_records()`. The base class applies the resume
    offset (skip the first N records) and keeps the malformed counter.
    """

    def __init__(self, description: str, resume: int = 0) -> None:
        self.description = description
        self.resume = max(0, resume)
        self.malformed = 0
        self.skipped = 0
        self._consumed = False

    def note_malformed(self, detail: str) -> None:
        self.malformed += 1
        logger.warning("Malformed record skipped | source=%s detail=%s", self.description, detail)

    def _records(self) -> AsyncIterator[SourceRecord]:
        raise NotImplementedError

    async def __aiter__(self) -> AsyncIterator[SourceRecord]:
        if self._consumed:
            raise SourceReadError(f"record source {self.description} is not restartable")
        self._consumed = True

        if self.resume:
            logger.info("Skipping previously ingested records | count=%d", self.resume)
        async for record in self._records():
            if self.skipped < self.resume:
                self.skipped += 1
                continue
            yield record


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

class JsonObjectScanner:
    """
    Incremental splitter of top-level JSON objects in a byte stream.

    feed() returns complete (object_bytes, start, end) triples; bytes
    outside objects (whitespace, '[', ']', ',') are ignored. A leading
    UTF-8 BOM is dropped.
    """

    def __init__(self) -> None:
        self._buf = bytearray()
        self._offset = 0          # absolute offset of _buf[0]
        self._pos = 0             # scan position inside _buf
        self._depth = 0
        self._obj_start = -1      # index in _buf where the current object starts
        self._in_string = False
        self._escape = False
        self._bom_checked = False

    def feed(self, chunk: bytes) -> list[tuple[bytes, int, int]]:
        self._buf.extend(chunk)
        if not self._bom_checked:
            if len(self._buf) < len(_BOM) and _BOM.startswith(bytes(self._buf)):
                return []
            self._bom_checked = True
            if self._buf.startswith(_BOM):
                del self._buf[: len(_BOM)]
                self._offset += len(_BOM)

        out: list[tuple[bytes, int, int]] = []
        buf = self._buf
        i = self._pos
        n = len(buf)
        while i < n:
            b = buf[i]
            if self._depth == 0:
                if b == _OPEN:
                    self._depth = 1
                    self._obj_start = i
            elif self._in_string:
                if self._escape:
                    self._escape = False
                elif b == _BACKSLASH:
                    self._escape = True
                elif b == _QUOTE:
                    self._in_string = False
            elif b == _QUOTE:
                self._in_string = True
            elif b == _OPEN:
                self._depth += 1
            elif b == _CLOSE:
                self._depth -= 1
                if self._depth == 0:
                    start = self._obj_start
                    out.append((bytes(buf[start : i + 1]), self._offset + start, self._offset + i + 1))
                    self._obj_start = -1
            i += 1

        # Compact: keep only the unfinished object (if any)
        keep_from = self._obj_start if self._depth > 0 else n
        if keep_from > 0:
            del buf[:keep_from]
            self._offset += keep_from
            if self._obj_start >= 0:
                self._obj_start -= keep_from
            i -= keep_from
        self._pos = i
        return out

    def finish(self) -> bytes | None:
        """Return a trailing unterminated object, if the stream ended mid-object."""
        if self._depth > 0 and self._obj_start >= 0:
            return bytes(self._buf[self._obj_start :])
        return None


class JsonRecordSource(RecordSource):
    def __init__(self, chunks: ChunkFactory, description: str, resume: int = 0) -> None:
        super().__init__(description, resume)
        self._chunks = chunks

    async def _records(self) -> AsyncIterator[SourceRecord]:
        scanner = JsonObjectScanner()
        async for chunk in self._chunks():
            for raw, start, end in scanner.feed(chunk):
                record = self._decode(raw, start)
                if record is not None:
                    yield SourceRecord(data=record, start=start, end=end)

        tail = scanner.finish()
        if tail is not None:
            self.note_malformed(f"unterminated object at end of stream ({len(tail)} bytes)")

    def _decode(self, raw: bytes, start: int) -> dict[str, Any] | None:
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            self.note_malformed(f"offset={start} error={exc}")
            return None
        if not isinstance(value, dict):
            self.note_malformed(f"offset={start} not an object")
            return None
        return value


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------

async def _iter_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[tuple[bytes, int, int]]:
    """Yield (line_bytes_including_newline, start, end)."""
    pending = bytearray()
    offset = 0
    async for chunk in chunks:
        pending.extend(chunk)
        while True:
            nl = pending.find(b"\n")
            if nl < 0:
                break
            line = bytes(pending[: nl + 1])
            del pending[: nl + 1]
            yield line, offset, offset + len(line)
            offset += len(line)
    if pending:
        yield bytes(pending), offset, offset + len(pending)


class CsvRecordSource(RecordSource):
    """
    CSV with a header row. Required columns: mobile, name, fname, address, id.
    Empty cells are dropped; rows without mobile, name or id are skipped.
    Every row is tagged with `region` when one is given.
    """

    def __init__(
        self,
        chunks: ChunkFactory,
        description: str,
        region: str | None = None,
        resume: int = 0,
    ) -> None:
        super().__init__(description, resume)
        self._chunks = chunks
        self.region = region

    async def _records(self) -> AsyncIterator[SourceRecord]:
        header: list[str] | None = None
        row_text = ""
        row_start = 0

        async for line, start, end in _iter_lines(self._chunks()):
            if not row_text:
                row_start = start
            if header is None and not row_text and start == 0:
                line = line.removeprefix(b"\xef\xbb\xbf")
            row_text += line.decode("utf-8", errors="replace")
            if row_text.count('"') % 2:
                continue          # quoted field spans lines

            text, row_text = row_text, ""
            if not text.strip():
                continue
            try:
                cells = next(csv.reader([text], skipinitialspace=True))
            except csv.Error as exc:
                self.note_malformed(f"offset={row_start} error={exc}")
                continue

            if header is None:
                header = [c.strip() for c in cells]
                missing = [c for c in CSV_REQUIRED_COLUMNS if c not in header]
                if missing:
                    raise SourceReadError(f"missing required column: {', '.join(missing)}")
                logger.info("CSV header accepted | columns=%s", header)
                continue

            record = {
                col: value
                for col, value in zip(header, cells)
                if value != ""
            }
            if any(col not in record for col in CSV_REQUIRED_VALUES):
                self.note_malformed(f"offset={row_start} missing mobile/name/id")
                continue
            if self.region:
                record["region"] = self.region
            yield SourceRecord(data=record, start=row_start, end=end)

        if row_text.strip():
            self.note_malformed(f"offset={row_start} unterminated quoted field")
        if header is None:
            raise SourceReadError("error reading CSV header: empty input")


# ---------------------------------------------------------------------------
# In-memory (programmatic callers, replay, tests)
# ---------------------------------------------------------------------------

class MemoryRecordSource(RecordSource):
    """
    Wrap already-decoded records. Offsets are those the records would
    occupy if serialised as NDJSON, so batch ranges stay meaningful.
    """

    def __init__(self, records: Iterable[dict[str, Any]], description: str = "memory", resume: int = 0) -> None:
        super().__init__(description, resume)
        self._items = records

    async def _records(self) -> AsyncIterator[SourceRecord]:
        offset = 0
        for record in self._items:
            size = len(json.dumps(record, separators=(",", ":"), default=str).encode()) + 1
            yield SourceRecord(data=record, start=offset, end=offset + size)
            offset += size
