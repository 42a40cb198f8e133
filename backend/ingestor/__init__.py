"""Bulk people-record ingestion pipeline: archive to S3, bulk-index into OpenSearch."""

__version__ = "0.1.0"
