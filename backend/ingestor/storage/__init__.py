from ingestor.storage.base import ArchiveLocation, ObjectStore

__all__ = ["ArchiveLocation", "ObjectStore"]
