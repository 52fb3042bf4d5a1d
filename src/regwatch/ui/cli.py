from __future__ import annotations

import argparse
import logging
import sys
from datetime import UTC, date, datetime
from signal import SIGINT, signal
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from regwatch.app import (
    build_services,
    detect_movements,
    run_full_population,
    run_gap_fill,
    run_incremental,
    run_to_completion,
)
from regwatch.config import configure_logging
from regwatch.domain.model import RunStatus

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import FrameType

    from regwatch.domain.runs import SyncRun

log = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Synchronise the business registry")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    full = subparsers.add_parser("full", help="Fetch the complete registry population")
    _add_jurisdictions(full)
    full.add_argument(
        "--from",
        dest="registered_from",
        type=str,
        help="ISO date; earliest registration date to fetch (defaults to config)",
    )
    full.add_argument(
        "--to",
        dest="registered_to",
        type=str,
        help="ISO date; latest registration date to fetch (defaults to today)",
    )
    full.add_argument(
        "--resume-since",
        type=str,
        help="ISO-8601 timestamp; skip partitions completed at or after this instant",
    )

    incremental = subparsers.add_parser("incremental", help="Fetch changes since the last run")
    _add_jurisdictions(incremental)
    incremental.add_argument(
        "--since",
        type=str,
        help="ISO-8601 timestamp (UTC); defaults to the stored watermark",
    )

    subparsers.add_parser("gapfill", help="Retry partitions recorded as gaps")

    detect = subparsers.add_parser("detect", help="Re-run movement detection over stored history")
    detect.add_argument(
        "--entity-id",
        dest="entity_ids",
        action="append",
        help="Restrict detection to this entity (repeatable)",
    )

    serve = subparsers.add_parser("serve", help="Run the HTTP job and query API")
    serve.add_argument("--host", default=DEFAULT_HOST, help="Bind address (default: %(default)s)")
    serve.add_argument(
        "--port", type=int, default=DEFAULT_PORT, help="Bind port (default: %(default)s)"
    )

    return parser.parse_args(list(argv))


def _add_jurisdictions(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--jurisdiction",
        dest="jurisdictions",
        action="append",
        default=[],
        help="Jurisdiction id to restrict the run to (repeatable; default: all)",
    )


def _parse_iso_datetime(value: str) -> datetime:
    try:
        normalized = value.strip()
        if normalized.endswith("Z"):
            normalized = normalized[:-1] + "+00:00"
        dt = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Invalid ISO timestamp: {value}") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _parse_iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid ISO date: {value}") from exc


def _validate(args: argparse.Namespace) -> None:
    if args.command == "full":
        args.registered_from = (
            _parse_iso_date(args.registered_from) if args.registered_from else None
        )
        args.registered_to = _parse_iso_date(args.registered_to) if args.registered_to else None
        start, end = args.registered_from, args.registered_to
        if start and end and start > end:
            raise ValueError("--from must not be after --to")
        args.resume_since = _parse_iso_datetime(args.resume_since) if args.resume_since else None
    elif args.command == "incremental":
        args.since = _parse_iso_datetime(args.since) if args.since else None
    elif args.command == "serve" and not 0 < args.port < 65536:  # noqa: PLR2004
        raise ValueError(f"Invalid port: {args.port}")


def _report(run: SyncRun) -> int:
    log.info(
        "Run %s finished %s: %s partitions completed, %s failed, %s gaps, %s records",
        run.id,
        run.status,
        len(run.partitions_completed),
        len(run.partitions_failed),
        len(run.gaps),
        run.records_processed,
    )
    for key, reason in sorted(run.partitions_failed.items()):
        log.warning("Failed partition %s: %s", key, reason)
    if run.conflicts:
        log.error("Entities needing manual reconciliation: %s", ", ".join(run.conflicts))
    return 1 if run.status is RunStatus.FAILED else 0


def _serve(host: str, port: int) -> None:
    import uvicorn  # noqa: PLC0415

    from regwatch.ui.api import create_app  # noqa: PLC0415

    uvicorn.run(create_app(), host=host, port=port, log_config=None)


def main(argv: Sequence[str] | None = None) -> None:
    """Main application entry point."""
    parsed_args: argparse.Namespace
    load_dotenv()
    args_list = list(argv) if argv is not None else list(sys.argv[1:])
    try:
        parsed_args = _parse_args(args_list)
        _validate(parsed_args)
    except ValueError:
        configure_logging()
        log.exception("CLI validation error")
        sys.exit(2)
    configure_logging(level=logging.DEBUG if parsed_args.verbose else logging.INFO)

    exit_code = 0
    try:
        if parsed_args.command == "serve":
            _serve(parsed_args.host, parsed_args.port)
            return

        services = build_services()
        if parsed_args.command == "full":
            run = run_to_completion(
                services,
                lambda s: run_full_population(
                    s,
                    jurisdictions=parsed_args.jurisdictions,
                    registered_from=parsed_args.registered_from,
                    registered_to=parsed_args.registered_to,
                    resume_since=parsed_args.resume_since,
                ),
            )
            exit_code = _report(run)
        elif parsed_args.command == "incremental":
            run = run_to_completion(
                services,
                lambda s: run_incremental(
                    s, since=parsed_args.since, jurisdictions=parsed_args.jurisdictions
                ),
            )
            exit_code = _report(run)
        elif parsed_args.command == "gapfill":
            exit_code = _report(run_to_completion(services, run_gap_fill))
        elif parsed_args.command == "detect":
            summary = detect_movements(services, entity_ids=parsed_args.entity_ids)
            log.info(
                "Detection finished: entities=%s, alerts=%s, critical=%s",
                summary.entities,
                summary.alerts,
                summary.critical,
            )
        else:
            raise ValueError(f"Unsupported command: {parsed_args.command}")  # noqa: TRY301

    except Exception:
        log.exception("Fatal error during sync")
        sys.exit(1)

    if exit_code:
        sys.exit(exit_code)


def sigint_handler(_signal_received: int, _frame: FrameType | None) -> None:
    """Handle SIGINT (Ctrl+C) gracefully."""
    log.info("Closed by user (Ctrl+C)")
    sys.exit(0)


if __name__ == "__main__":
    signal(SIGINT, sigint_handler)
    main()
