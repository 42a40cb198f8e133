from ingestor.search.base import ItemOutcome, SearchEngine
from ingestor.search.indexer import BulkIndexer, BulkOutcome
from ingestor.search.mapping import document_id_for, to_index_document

__all__ = [
    "BulkIndexer",
    "BulkOutcome",
    "ItemOutcome",
    "SearchEngine",
    "document_id_for",
    "to_index_document",
]
