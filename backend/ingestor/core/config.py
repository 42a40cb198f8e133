"""
Pipeline configuration via environment variables (12-factor).
Pydantic BaseSettings validates and coerces all values at startup.

Throughput knobs are clamped into safe ranges instead of rejected:
an operator typo in INGEST_BATCH_SIZE should slow a run down, not stop it.
Unparseable numbers fall back to the field default before clamping.
"""

from __future__ import annotations

import os
import re
from functools import lru_cache
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Bounds
# ---------------------------------------------------------------------------

BATCH_SIZE_MIN:  int = 1000
BATCH_SIZE_MAX:  int = 20000
BATCH_SIZE_DEFAULT: int = 7500

WORKER_MULTIPLIER_MIN: int = 1
WORKER_MULTIPLIER_MAX: int = 8
WORKER_MULTIPLIER_DEFAULT: int = 2

BULK_MAX_ATTEMPTS_DEFAULT: int = 5
BULK_RETRY_BASE_DEFAULT: float = 2.0   # seconds

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


def _as_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_duration(value: Any, default: float) -> float:
    """
    Parse "2s", "500ms", "1m", "1.5" (seconds) into seconds.
    Anything unparseable yields the default.
    """
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return default
    match = _DURATION_RE.match(value)
    if not match:
        return default
    number, unit = match.groups()
    return float(number) * _DURATION_UNITS[unit]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # AWS — S3 archive
    # ------------------------------------------------------------------
    aws_region: str = "us-east-1"

    s3_upload_bucket: str = ""
    s3_upload_prefix: str = "ingest/raw/"

    # Local dev: set these; prod: use the task role (no static keys)
    aws_access_key_id:     str = ""
    aws_secret_access_key: str = ""

    # ------------------------------------------------------------------
    # OpenSearch
    # ------------------------------------------------------------------
    opensearch_endpoint:        str = ""
    opensearch_index:           str = "people-dev-0001"
    opensearch_master_user:     str = ""
    opensearch_master_password: str = ""
    opensearch_verify_tls:      bool = True

    index_shards:         int = 6
    index_final_replicas: int = 1

    # ------------------------------------------------------------------
    # Throughput / reliability knobs
    # ------------------------------------------------------------------
    ingest_batch_size:        int = BATCH_SIZE_DEFAULT
    ingest_worker_multiplier: int = WORKER_MULTIPLIER_DEFAULT
    ingest_base_parallelism:  int = 0      # 0 = os.cpu_count()
    ingest_queue_depth_factor: int = 2     # queue holds pool_size × factor batches

    opensearch_bulk_max_attempts: int   = BULK_MAX_ATTEMPTS_DEFAULT
    opensearch_bulk_retry_base:   float = BULK_RETRY_BASE_DEFAULT
    ingest_retry_jitter_fraction: float = 0.25

    archive_max_attempts:        int   = 3
    archive_retry_delay_seconds: float = 0.5
    archive_timeout_seconds:     float = 30.0
    bulk_timeout_seconds:        float = 60.0

    progress_log_interval_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    app_env: str = "development"   # development | staging | production
    debug: bool = False
    log_level: str = "INFO"

    api_finished_runs_kept: int = 100   # finished run handles the HTTP registry remembers

    # ------------------------------------------------------------------
    # Validators — clamp, never reject
    # ------------------------------------------------------------------

    @field_validator("ingest_batch_size", mode="before")
    @classmethod
    def _clamp_batch_size(cls, v: Any) -> int:
        return clamp(_as_int(v, BATCH_SIZE_DEFAULT), BATCH_SIZE_MIN, BATCH_SIZE_MAX)

    @field_validator("ingest_worker_multiplier", mode="before")
    @classmethod
    def _clamp_worker_multiplier(cls, v: Any) -> int:
        return clamp(
            _as_int(v, WORKER_MULTIPLIER_DEFAULT),
            WORKER_MULTIPLIER_MIN,
            WORKER_MULTIPLIER_MAX,
        )

    @field_validator("ingest_base_parallelism", mode="before")
    @classmethod
    def _base_parallelism(cls, v: Any) -> int:
        return max(0, _as_int(v, 0))

    @field_validator(
        "ingest_queue_depth_factor", "archive_max_attempts", "api_finished_runs_kept", mode="before",
    )
    @classmethod
    def _at_least_one(cls, v: Any, info) -> int:
        default = cls.model_fields[info.field_name].default
        return max(1, _as_int(v, default))

    @field_validator("opensearch_bulk_max_attempts", mode="before")
    @classmethod
    def _bulk_attempts(cls, v: Any) -> int:
        return max(1, _as_int(v, BULK_MAX_ATTEMPTS_DEFAULT))

    @field_validator("opensearch_bulk_retry_base", mode="before")
    @classmethod
    def _retry_base(cls, v: Any) -> float:
        return max(0.0, parse_duration(v, BULK_RETRY_BASE_DEFAULT))

    @field_validator("ingest_retry_jitter_fraction", mode="before")
    @classmethod
    def _jitter_fraction(cls, v: Any) -> float:
        return min(1.0, max(0.0, _as_float(v, 0.25)))

    @field_validator(
        "archive_retry_delay_seconds",
        "archive_timeout_seconds",
        "bulk_timeout_seconds",
        "progress_log_interval_seconds",
        mode="before",
    )
    @classmethod
    def _seconds(cls, v: Any, info) -> float:
        default = cls.model_fields[info.field_name].default
        return max(0.0, parse_duration(v, default))

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def base_parallelism(self) -> int:
        return self.ingest_base_parallelism or (os.cpu_count() or 1)

    @property
    def pool_size(self) -> int:
        return self.ingest_worker_multiplier * self.base_parallelism

    @property
    def queue_capacity(self) -> int:
        return self.pool_size * self.ingest_queue_depth_factor

    def snapshot(self) -> dict[str, Any]:
        """Knobs recorded on every run report. Credentials never leave here."""
        return {
            "aws_region":                   self.aws_region,
            "opensearch_endpoint":          self.opensearch_endpoint,
            "opensearch_index":             self.opensearch_index,
            "s3_upload_bucket":             self.s3_upload_bucket,
            "s3_upload_prefix":             self.s3_upload_prefix,
            "ingest_batch_size":            self.ingest_batch_size,
            "ingest_worker_multiplier":     self.ingest_worker_multiplier,
            "base_parallelism":             self.base_parallelism,
            "pool_size":                    self.pool_size,
            "queue_capacity":               self.queue_capacity,
            "opensearch_bulk_max_attempts": self.opensearch_bulk_max_attempts,
            "opensearch_bulk_retry_base":   self.opensearch_bulk_retry_base,
            "ingest_retry_jitter_fraction": self.ingest_retry_jitter_fraction,
            "archive_max_attempts":         self.archive_max_attempts,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
