"""
Retry Policy — bounded attempts with jittered exponential backoff.

  delay(n) = base × 2^(n-1) + U(0, jitter_fraction × base × 2^(n-1))

Jitter only ever adds, so the total backoff of a batch that uses every
attempt is at least base × (2^(max_attempts-1) − 1).

Backoff waits go through `wait_or_cancel`, which returns early when the
run's cancel event fires.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field

from ingestor.core.config import Settings, settings as default_settings


@dataclass
class RetryPolicy:
    max_attempts:    int = 5
    base_delay:      float = 2.0
    jitter_fraction: float = 0.25
    rng:             random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        self.jitter_fraction = min(max(self.jitter_fraction, 0.0), 1.0)

    @classmethod
    def from_settings(cls, cfg: Settings | None = None, rng: random.Random | None = None) -> "RetryPolicy":
        cfg = cfg or default_settings
        return cls(
            max_attempts=cfg.opensearch_bulk_max_attempts,
            base_delay=cfg.opensearch_bulk_retry_base,
            jitter_fraction=cfg.ingest_retry_jitter_fraction,
            rng=rng or random.Random(),
        )

    def should_retry(self, attempt: int) -> bool:
        """True when another attempt may follow attempt number `attempt` (1-based)."""
        return attempt < self.max_attempts

    def delay(self, attempt: int) -> float:
        """Backoff before attempt `attempt + 1`."""
        nominal = self.base_delay * (2 ** (attempt - 1))
        if self.jitter_fraction <= 0 or nominal <= 0:
            return nominal
        return nominal + self.rng.uniform(0, self.jitter_fraction * nominal)


async def wait_or_cancel(cancel_event: asyncio.Event, delay: float) -> bool:
    """
    Sleep for `delay` seconds unless `cancel_event` fires first.

    Returns True when the wait was interrupted by cancellation.
    """
    if cancel_event.is_set():
        return True
    if delay <= 0:
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True
