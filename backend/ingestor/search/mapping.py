"""
Raw record → IndexDocument projection.

Only string values are taken from the record; anything else in the
payload (internal ids, telecom circle, …) stays in the archive only.
`alt_address` falls back to `address`.

Stable document id:
  - the record's Mongo-style `_id.$oid` when present
  - otherwise sha1 over the lower-cased identity fields joined with "|"
The id depends only on record content, so re-ingesting a source overwrites
the same documents instead of duplicating them.
"""

from __future__ import annotations

import hashlib
from typing import Any

from ingestor.schemas.documents import IndexDocument

_STRING_FIELDS: tuple[str, ...] = ("mobile", "name", "fname", "address", "alt", "id", "email")


def _str(record: dict[str, Any], field: str) -> str:
    value = record.get(field)
    return value if isinstance(value, str) else ""


def _oid(record: dict[str, Any]) -> str:
    raw = record.get("_id")
    if isinstance(raw, dict):
        oid = raw.get("$oid")
        if isinstance(oid, str):
            return oid
    return ""


def _year(record: dict[str, Any]) -> int | None:
    value = record.get("year_of_registration")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def document_id_for(record: dict[str, Any]) -> str:
    oid = _oid(record)
    if oid:
        return oid
    parts = [oid] + [_str(record, f) for f in _STRING_FIELDS]
    return hashlib.sha1("|".join(p.lower() for p in parts).encode("utf-8")).hexdigest()


def to_index_document(record: dict[str, Any]) -> IndexDocument:
    address = _str(record, "address")
    region = record.get("region")
    return IndexDocument(
        document_id=document_id_for(record),
        id=_str(record, "id"),
        name=_str(record, "name"),
        fname=_str(record, "fname"),
        mobile=_str(record, "mobile"),
        alt=_str(record, "alt"),
        email=_str(record, "email"),
        address=address,
        alt_address=_str(record, "alt_address") or address,
        year_of_registration=_year(record),
        region=region if isinstance(region, str) and region else None,
    )
