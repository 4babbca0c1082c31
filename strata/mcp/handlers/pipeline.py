"""Handlers for pipeline tools: archaeology_run, archaeology_status."""

import json
from typing import Any, Dict

from strata.config import PipelineConfig
from strata.mcp.sanitize import sanitize_string, validate_bool, validate_enum, validate_number
from strata.pipeline import REPORT_FILENAME, ArchaeologyPipeline, run_directory
from strata.protocols import PartitionStore
from strata.storage import InMemoryPartitionStore
from strata.utils import validate_run_id

# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def validate_archaeology_run(arguments: Dict[str, Any]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    sanitized["export_path"] = sanitize_string(arguments.get("export_path"), "export_path", 4096)
    sanitized["dry_run"] = validate_bool(arguments.get("dry_run"), "dry_run")
    batch_size = arguments.get("batch_size")
    sanitized["batch_size"] = (
        int(validate_number(batch_size, "batch_size", 1, 1000)) if batch_size is not None else None
    )
    max_drift = arguments.get("max_drift")
    sanitized["max_drift"] = (
        validate_number(max_drift, "max_drift", 0, 100) if max_drift is not None else None
    )
    sanitized["format"] = validate_enum(arguments.get("format"), "format", ["text", "json"], "text")
    return sanitized


def validate_archaeology_status(arguments: Dict[str, Any]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    run_id = sanitize_string(arguments.get("run_id"), "run_id", 100, required=False)
    sanitized["run_id"] = validate_run_id(run_id) if run_id else None
    return sanitized


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def handle_archaeology_run(args: Dict[str, Any], store: PartitionStore) -> str:
    config = PipelineConfig.from_env().replace(
        mode="dry_run" if args.get("dry_run") else None,
        batch_size=args.get("batch_size"),
        max_batch_drift=args.get("max_drift"),
    )
    pipeline = ArchaeologyPipeline(
        config,
        store=InMemoryPartitionStore() if config.dry_run else store,
    )
    report = pipeline.run_file(args["export_path"])

    if args.get("format") == "json":
        return json.dumps(report.to_dict(), indent=2, default=str)
    return f"{report.format_text()}\n\nRun id: {report.run_id}\nExit code: {report.exit_code}"


def handle_archaeology_status(args: Dict[str, Any], store: PartitionStore) -> str:
    run_id = args.get("run_id")
    if run_id:
        report_path = run_directory(run_id) / REPORT_FILENAME
        if not report_path.exists():
            raise FileNotFoundError(f"No report for run {run_id}")
        return report_path.read_text(encoding="utf-8")

    counts = store.partition_counts()
    indexes = store.index_counts()
    anchors = len(store.list_anchors())
    lines = ["Partitions:"]
    lines.extend(f"  {name}: {count}" for name, count in counts.items())
    lines.append("Indexes:")
    lines.extend(f"  {name}: {count}" for name, count in indexes.items())
    lines.append(f"Correction anchors: {anchors}")
    return "\n".join(lines)


HANDLERS = {
    "archaeology_run": handle_archaeology_run,
    "archaeology_status": handle_archaeology_status,
}

VALIDATORS = {
    "archaeology_run": validate_archaeology_run,
    "archaeology_status": validate_archaeology_status,
}
