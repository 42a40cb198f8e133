"""
Dead-letter replay.

Re-ingests only the dead-lettered documents of a finished run:
  1. load the RunReport (local JSON file or s3:// URI)
  2. group dead letters by the archive key of their raw batch
  3. fetch each archived batch and keep the records whose document id
     was dead-lettered
  4. run them through the normal pipeline as a new run

Dead letters without an archive key (batch never archived: archive
failure, cancelled or aborted before start) cannot be replayed from the
archive; they are counted and logged with their source byte range so an
operator can re-run that slice with `--resume`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

from ingestor.core.config import Settings, settings as default_settings
from ingestor.core.errors import SourceReadError
from ingestor.schemas.runs import DeadLetterEntry, RunReport
from ingestor.search.mapping import document_id_for
from ingestor.services.ingestion import IngestionService
from ingestor.source.records import MemoryRecordSource
from ingestor.source.streams import parse_s3_uri
from ingestor.storage.archiver import deserialize_batch
from ingestor.storage.s3 import S3ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class ReplayPlan:
    run_id:        str
    records:       list[dict] = field(default_factory=list)
    missing_ids:   list[str] = field(default_factory=list)
    unreplayable:  list[DeadLetterEntry] = field(default_factory=list)


async def load_report(location: str, cfg: Settings | None = None) -> RunReport:
    """Read a persisted RunReport from a local path or s3://bucket/key."""
    if location.startswith("s3://"):
        bucket, key = parse_s3_uri(location)
        try:
            body = await S3ObjectStore(cfg or default_settings, bucket=bucket).get(key)
        except FileNotFoundError as exc:
            raise SourceReadError(f"report not found: {location}") from exc
    else:
        loop = asyncio.get_running_loop()
        try:
            body = await loop.run_in_executor(None, Path(location).read_bytes)
        except OSError as exc:
            raise SourceReadError(f"error reading report {location}: {exc}") from exc
    return RunReport.model_validate_json(body)


async def plan_replay(report: RunReport, service: IngestionService) -> ReplayPlan:
    plan = ReplayPlan(run_id=report.run_id)
    by_key: dict[str, set[str]] = defaultdict(set)
    for entry in report.dead_letters:
        if entry.archive_key:
            by_key[entry.archive_key].add(entry.document_id)
        else:
            plan.unreplayable.append(entry)

    for key in sorted(by_key):
        wanted = by_key[key]
        try:
            body = await service.store.get(key)
        except FileNotFoundError:
            logger.error("Archived batch missing | run=%s key=%s documents=%d", report.run_id, key, len(wanted))
            plan.missing_ids.extend(sorted(wanted))
            continue

        found: dict[str, dict] = {}   # last record per id, as the worker indexed it
        for record in deserialize_batch(body):
            doc_id = document_id_for(record)
            if doc_id in wanted:
                found[doc_id] = record
        plan.records.extend(found.values())
        plan.missing_ids.extend(sorted(wanted - found.keys()))

    if plan.unreplayable:
        logger.warning(
            "Dead letters without an archived batch | run=%s count=%d",
            report.run_id, len(plan.unreplayable),
        )
    return plan


async def replay_run(
    report: RunReport,
    service: IngestionService,
    *,
    batch_size: int | None = None,
) -> tuple[ReplayPlan, RunReport]:
    """Re-ingest the replayable dead letters of `report` as a new run."""
    plan = await plan_replay(report, service)
    logger.info(
        "Replay planned | run=%s records=%d missing=%d unreplayable=%d",
        report.run_id, len(plan.records), len(plan.missing_ids), len(plan.unreplayable),
    )
    coordinator = service.coordinator(
        batch_size=batch_size,
        extra_snapshot={"replay_of": report.run_id},
    )
    source = MemoryRecordSource(plan.records, description=f"replay:{report.run_id}")
    result = await service.execute(coordinator, source, prepare=False)
    return plan, result
