"""Handlers for partition tools: partition, search, anchors, override."""

import json
from typing import Any, Dict

from strata.mcp.sanitize import sanitize_string, validate_enum, validate_number
from strata.mcp.tool_definitions import VALID_PARTITIONS
from strata.protocols import PartitionStore
from strata.router import MemoryRouter
from strata.types import Destination, PartitionRecord

# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def validate_archaeology_partition(arguments: Dict[str, Any]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    sanitized["partition"] = validate_enum(
        arguments.get("partition"), "partition", VALID_PARTITIONS, required=True
    )
    sanitized["limit"] = int(validate_number(arguments.get("limit"), "limit", 1, 200, 20))
    sanitized["offset"] = int(validate_number(arguments.get("offset"), "offset", 0, None, 0))
    sanitized["format"] = validate_enum(arguments.get("format"), "format", ["text", "json"], "text")
    return sanitized


def validate_archaeology_search(arguments: Dict[str, Any]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    sanitized["query"] = sanitize_string(arguments.get("query"), "query", 500)
    partition = arguments.get("partition")
    sanitized["partition"] = (
        validate_enum(partition, "partition", VALID_PARTITIONS) if partition is not None else None
    )
    sanitized["limit"] = int(validate_number(arguments.get("limit"), "limit", 1, 100, 10))
    return sanitized


def validate_archaeology_anchors(arguments: Dict[str, Any]) -> Dict[str, Any]:
    return {"limit": int(validate_number(arguments.get("limit"), "limit", 1, 500, 50))}


def validate_archaeology_override(arguments: Dict[str, Any]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    sanitized["message_id"] = sanitize_string(arguments.get("message_id"), "message_id", 200)
    sanitized["partition"] = validate_enum(
        arguments.get("partition"), "partition", VALID_PARTITIONS, required=True
    )
    sanitized["reason"] = sanitize_string(arguments.get("reason"), "reason", 500)
    return sanitized


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _format_record(record: PartitionRecord) -> str:
    preview = record.content[:120] + ("..." if len(record.content) > 120 else "")
    return (
        f"- [{record.partition.value}] {record.message_id} ({record.role.value}, "
        f"confidence {record.confidence}, drift {record.drift_score:.1f}): {preview}"
    )


def handle_archaeology_partition(args: Dict[str, Any], store: PartitionStore) -> str:
    partition = Destination(args["partition"])
    records = store.query_partition(partition, limit=args.get("limit", 20), offset=args.get("offset", 0))

    if args.get("format") == "json":
        return json.dumps(
            [
                {
                    "message_id": r.message_id,
                    "thread_id": r.thread_id,
                    "role": r.role.value,
                    "content": r.content,
                    "confidence": r.confidence,
                    "drift_score": r.drift_score,
                    "committed_at": r.committed_at,
                }
                for r in records
            ],
            indent=2,
        )
    if not records:
        return f"No messages in {partition.value}."
    return "\n".join([f"{partition.value} ({len(records)} shown):"] + [_format_record(r) for r in records])


def handle_archaeology_search(args: Dict[str, Any], store: PartitionStore) -> str:
    partition = Destination(args["partition"]) if args.get("partition") else None
    records = store.search(args["query"], partition=partition, limit=args.get("limit", 10))
    if not records:
        return f"No messages found for '{args['query']}'"
    return "\n".join([f"Found {len(records)} message(s):"] + [_format_record(r) for r in records])


def handle_archaeology_anchors(args: Dict[str, Any], store: PartitionStore) -> str:
    anchors = store.list_anchors(limit=args.get("limit", 50))
    if not anchors:
        return "No correction anchors."
    lines = [f"Correction anchors ({len(anchors)}):"]
    for anchor in anchors:
        lines.append(
            f"- [{anchor.category.value}] {anchor.source_message_id}: {anchor.truth_value[:100]}"
        )
    return "\n".join(lines)


def handle_archaeology_override(args: Dict[str, Any], store: PartitionStore) -> str:
    router = MemoryRouter(store)
    record = router.override(args["message_id"], Destination(args["partition"]), args["reason"])
    return f"Moved {record.message_id} to {record.partition.value}"


HANDLERS = {
    "archaeology_partition": handle_archaeology_partition,
    "archaeology_search": handle_archaeology_search,
    "archaeology_anchors": handle_archaeology_anchors,
    "archaeology_override": handle_archaeology_override,
}

VALIDATORS = {
    "archaeology_partition": validate_archaeology_partition,
    "archaeology_search": validate_archaeology_search,
    "archaeology_anchors": validate_archaeology_anchors,
    "archaeology_override": validate_archaeology_override,
}
