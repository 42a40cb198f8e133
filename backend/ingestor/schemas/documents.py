"""
Index Document — the searchable projection of one person record.

Wire field names follow the people_v1 index mapping (fname, alt, …);
Python attribute names say what the field holds. `document_id` is the
index `_id` and is never part of the document body.

Re-indexing the same document_id is an overwrite, so ingesting a source
twice converges to the same index state.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class IndexDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    document_id:   str        = Field(..., exclude=True, description="Stable index key (_id)")
    id:            str        = Field("", description="Alternate identifier from the source record")
    name:          str        = ""
    father_name:   str        = Field("", alias="fname")
    mobile:        str        = ""
    alt_phone:     str        = Field("", alias="alt")
    email:         str        = ""
    address:       str        = ""
    alt_address:   str        = ""
    year_of_registration: int | None = None
    region:        str | None = None

    def source(self) -> dict:
        """Document body as sent in the bulk request."""
        return self.model_dump(by_alias=True, exclude_none=True)
