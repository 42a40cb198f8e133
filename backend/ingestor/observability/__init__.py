"""
Observability Package — logging + span timing

Provides:
  configure_logging — root logger setup for CLI / API entry points
  traced            — decorator for instrumenting async calls (archive, bulk)
"""

from ingestor.observability.tracing import configure_logging, traced

__all__ = ["configure_logging", "traced"]
