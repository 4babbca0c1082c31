"""Shared helpers for strata CLI commands."""

import json
import re
from pathlib import Path

from strata.pipeline import run_directory
from strata.storage import SQLitePartitionStore
from strata.types import PartitionRecord
from strata.utils import validate_run_id


def validate_input(value: str, field_name: str, max_length: int = 1000) -> str:
    """Validate and sanitize CLI inputs."""
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")

    if len(value) > max_length:
        raise ValueError(f"{field_name} too long (max {max_length} characters)")

    # Remove null bytes and control characters except newlines
    return re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", value)


def open_store(args) -> SQLitePartitionStore:
    return SQLitePartitionStore(getattr(args, "db", None))


def resolve_run_dir(args) -> Path:
    """Run directory from ``--run-dir`` or the run id under the data directory."""
    run_dir = getattr(args, "run_dir", None)
    if run_dir:
        return Path(run_dir).expanduser()
    return run_directory(validate_run_id(args.run_id))


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def record_to_dict(record: PartitionRecord, preview: int = 0) -> dict:
    content = record.content
    if preview and len(content) > preview:
        content = content[:preview] + "..."
    return {
        "message_id": record.message_id,
        "thread_id": record.thread_id,
        "partition": record.partition.value,
        "role": record.role.value,
        "content": content,
        "confidence": record.confidence,
        "drift_score": record.drift_score,
        "strategy": record.profile.get("strategy"),
        "committed_at": record.committed_at,
        "override_reason": record.override_reason,
    }


def format_record(record: PartitionRecord, preview: int = 80) -> str:
    content = record.content.replace("\n", " ")
    if len(content) > preview:
        content = content[:preview] + "..."
    return (
        f"  [{record.partition.value}] {record.message_id} ({record.role.value}, "
        f"conf {record.confidence}, drift {record.drift_score:.1f})\n    {content}"
    )
