"""
Command-line entry point.

  ingestor ingest SOURCE [--format auto|json|csv] [--region R] [--resume N]
                         [--batch-size B] [--report-file F]
  ingestor replay REPORT [--batch-size B] [--report-file F]

SOURCE is a local path, "-" for stdin, or s3://bucket/key.
REPORT is a run report written by a previous run (local path or s3:// URI).

SIGINT / SIGTERM cancel the run: dispatch stops, in-flight batches finish
their current attempt and the report is still written.

Exit codes:
  0    succeeded
  1    aborted (run-fatal error, unreadable source, bad configuration)
  2    partially succeeded (dead letters present)
  130  cancelled
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from ingestor import __version__
from ingestor.core.config import get_settings
from ingestor.core.errors import IngestError
from ingestor.observability import configure_logging
from ingestor.pipeline.coordinator import IngestCoordinator
from ingestor.schemas.runs import RunReport, RunStatus
from ingestor.services.ingestion import IngestionService
from ingestor.services.replay import load_report, replay_run
from ingestor.source import open_source

logger = logging.getLogger(__name__)

EXIT_CODES: dict[RunStatus, int] = {
    RunStatus.SUCCEEDED:           0,
    RunStatus.ABORTED:             1,
    RunStatus.PARTIALLY_SUCCEEDED: 2,
    RunStatus.CANCELLED:           130,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ingestor",
        description="Bulk-load people records into OpenSearch with an S3 raw archive.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Ingest a JSON or CSV source")
    ingest.add_argument("source", help='Local path, "-" for stdin, or s3://bucket/key')
    ingest.add_argument("--format", choices=("auto", "json", "csv"), default="auto",
                        help="Input format (default: by file extension)")
    ingest.add_argument("--region", default=None, help="Region tag applied to CSV rows")
    ingest.add_argument("--resume", type=int, default=0, metavar="N",
                        help="Skip the first N records")
    _add_common(ingest)

    replay = sub.add_parser("replay", help="Re-ingest the dead letters of a previous run")
    replay.add_argument("report", help="Run report path or s3:// URI")
    _add_common(replay)
    return parser


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--batch-size", type=int, default=None, metavar="B",
                        help="Override INGEST_BATCH_SIZE (clamped to the allowed range)")
    parser.add_argument("--report-file", type=Path, default=None, metavar="F",
                        help="Also write the run report JSON to this path")


def _install_signal_handlers(coordinator: IngestCoordinator) -> None:
    """First SIGINT/SIGTERM cancels the run; a second one interrupts without a report."""
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)

    def _on_signal() -> None:
        for sig in signals:
            loop.remove_signal_handler(sig)
        coordinator.cancel()

    for sig in signals:
        try:
            loop.add_signal_handler(sig, _on_signal)
        except (NotImplementedError, RuntimeError):
            # Windows loops and non-main threads; Ctrl-C then interrupts without a report
            logger.debug("Signal handler unavailable | signal=%s", sig.name)


def _write_report(report: RunReport, path: Path | None) -> None:
    if path is None:
        return
    path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    logger.info("Report written | path=%s", path)


async def _ingest(args: argparse.Namespace, service: IngestionService) -> RunReport:
    source = open_source(
        args.source, fmt=args.format, region=args.region, resume=max(0, args.resume),
    )
    coordinator = service.coordinator(batch_size=args.batch_size)
    _install_signal_handlers(coordinator)
    return await service.execute(coordinator, source)


async def _replay(args: argparse.Namespace, service: IngestionService) -> RunReport:
    report = await load_report(args.report)
    _, result = await replay_run(report, service, batch_size=args.batch_size)
    return result


async def _main(args: argparse.Namespace) -> int:
    service = IngestionService(get_settings())
    try:
        if args.command == "ingest":
            report = await _ingest(args, service)
        else:
            report = await _replay(args, service)
    finally:
        await service.aclose()

    _write_report(report, args.report_file)
    c = report.counters
    print(
        f"run {report.run_id}: {report.status.value} | records={c.records_seen} "
        f"indexed={c.documents_indexed} dead_lettered={c.documents_dead_lettered} "
        f"malformed={c.malformed_skipped}"
        + (f" | report={report.report_uri}" if report.report_uri else ""),
        file=sys.stderr,
    )
    return EXIT_CODES[report.status]


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    cfg = get_settings()
    configure_logging(cfg)

    try:
        return asyncio.run(_main(args))
    except (IngestError, ValueError) as exc:
        logger.error("Run failed before start | error=%s", exc)
        return EXIT_CODES[RunStatus.ABORTED]


if __name__ == "__main__":
    sys.exit(main())
