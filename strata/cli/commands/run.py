"""`strata run` - run the archaeology pipeline over an export."""

import logging
import sys

from strata.cli.commands.helpers import print_json, validate_input
from strata.config import PipelineConfig
from strata.logging_config import setup_strata_logging
from strata.pipeline import ArchaeologyPipeline
from strata.protocols import InputError, ThreadCriteria
from strata.report import EXIT_INPUT_ERROR
from strata.sources import FileThreadSource, HttpThreadSource
from strata.storage import InMemoryPartitionStore, SQLitePartitionStore
from strata.utils import new_run_id

logger = logging.getLogger(__name__)


def build_config(args) -> PipelineConfig:
    """Defaults < config file < STRATA_* environment < command-line flags."""
    config = PipelineConfig.from_file(args.config) if args.config else PipelineConfig()
    config = PipelineConfig.from_env(config)
    overrides = {
        "mode": "dry_run" if args.dry_run else None,
        "batch_size": args.batch_size,
        "max_batch_drift": args.max_drift,
        "confidence_threshold": args.confidence_threshold,
        "audit_level": args.audit_level,
        "max_workers": args.workers,
        "thread_timeout_seconds": args.thread_timeout,
    }
    if args.no_rollback:
        overrides["rollback_on_failure"] = False
    return config.replace(**overrides)


def build_criteria(args):
    if args.since is None and args.until is None and not args.title and args.limit is None:
        return None
    return ThreadCriteria(
        since=args.since,
        until=args.until,
        title_contains=validate_input(args.title, "title", 200) if args.title else None,
        limit=args.limit,
    )


def cmd_run(args):
    """Run the pipeline and exit with the report's exit code."""
    config = build_config(args)
    run_id = args.run_id or new_run_id()
    setup_strata_logging(run_id=run_id, level=args.log_level)

    if args.source_url:
        source = HttpThreadSource(args.source_url, api_key=args.api_key)
    elif args.export:
        source = FileThreadSource(args.export)
    else:
        raise ValueError("Provide an export file or --source-url")

    store = InMemoryPartitionStore() if config.dry_run else SQLitePartitionStore(args.db)
    pipeline = ArchaeologyPipeline(config, store=store, output_dir=args.output, run_id=run_id)

    try:
        report = pipeline.run(source, build_criteria(args))
    except InputError as e:
        logger.error(f"Input error: {e}")
        print(f"✗ {e}")
        sys.exit(EXIT_INPUT_ERROR)

    if args.json:
        print_json(report.to_dict())
    else:
        print(report.format_text())
        print(f"\nReport: {pipeline.report_path}")
    sys.exit(report.exit_code)


def add_run_parser(subparsers):
    p_run = subparsers.add_parser("run", help="Run the archaeology pipeline over an export")
    p_run.add_argument("export", nargs="?", help="Path to the conversation export JSON")
    p_run.add_argument("--source-url", help="Fetch conversations from <URL>/conversations instead")
    p_run.add_argument("--api-key", help="Bearer token for --source-url")
    p_run.add_argument("--config", "-c", help="JSON config file")
    p_run.add_argument("--dry-run", action="store_true", help="Simulate commits, persist nothing")
    p_run.add_argument("--batch-size", "-b", type=int, help="Threads per batch (default: 15)")
    p_run.add_argument("--max-drift", type=float, help="Maximum aggregate batch drift (default: 35)")
    p_run.add_argument(
        "--confidence-threshold", type=float, help="Confidence needed for primary (default: 75)"
    )
    p_run.add_argument("--no-rollback", action="store_true", help="Disable rollback on failure")
    p_run.add_argument(
        "--audit-level",
        choices=["basic", "standard", "comprehensive"],
        help="Audit verbosity (default: comprehensive)",
    )
    p_run.add_argument("--workers", type=int, help="Analysis workers per batch (default: 1)")
    p_run.add_argument("--thread-timeout", type=float, help="Per-thread analysis timeout in seconds")
    p_run.add_argument("--since", type=float, help="Only threads updated at or after (epoch seconds)")
    p_run.add_argument("--until", type=float, help="Only threads updated at or before (epoch seconds)")
    p_run.add_argument("--title", help="Only threads whose title contains this text")
    p_run.add_argument("--limit", type=int, help="Maximum threads to process")
    p_run.add_argument("--run-id", help="Run identifier (default: generated)")
    p_run.add_argument("--output", "-o", help="Run artifact directory")
    p_run.add_argument(
        "--log-level", default="INFO", help="Diagnostic log level (default: INFO)"
    )
    p_run.add_argument("--json", "-j", action="store_true", help="Output report as JSON")
    return p_run
