"""
Observability — logging setup and span timing.

Decorator `@traced(name)`:
  Instruments any async function with timing and error recording.
  Spans land in the standard logging stream so they work with any
  log shipper (CloudWatch, Loki, plain files).

Environment variables:
  LOG_LEVEL=INFO     # DEBUG shows per-span timings
  DEBUG=true         # forces DEBUG regardless of LOG_LEVEL
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, Coroutine, TypeVar

from ingestor.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(cfg: Settings | None = None) -> None:
    """Configure the root logger once per process (entry points only)."""
    cfg = cfg or default_settings
    level = logging.DEBUG if cfg.debug else getattr(logging, cfg.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # botocore logs every retry at DEBUG; keep the pipeline's own logs readable
    logging.getLogger("botocore").setLevel(max(level, logging.WARNING))
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Decorator that instruments an async function with timing and error logging.

    Usage::

        @traced("archive.put")
        async def put(self, key: str, body: bytes) -> ArchiveLocation:
            ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.debug("trace | span=%s elapsed_ms=%.1f ok", span_name, elapsed_ms)
                return result
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.warning(
                    "trace | span=%s elapsed_ms=%.1f error=%s: %s",
                    span_name, elapsed_ms, type(exc).__name__, exc,
                )
                raise

        return wrapper  # type: ignore[return-value]
    return decorator
