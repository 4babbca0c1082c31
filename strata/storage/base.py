"""Shared helpers for partition store implementations.

The ``PartitionStore`` contract itself is defined in ``strata.protocols``
and re-exported here.
"""

import json
from typing import Any, Dict, Tuple

from strata.protocols import PartitionStore, StorageError, StorageUnavailableError
from strata.types import (
    CorrectionAnchor,
    PartitionRecord,
    SourceAuthorEntry,
    SubjectRelevanceEntry,
)

__all__ = [
    "PartitionStore",
    "StorageError",
    "StorageUnavailableError",
    "anchor_to_row",
    "entry_state",
    "record_state",
    "record_to_row",
]


def _canonical(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def record_state(record: PartitionRecord) -> Tuple:
    """Fields that decide whether a re-commit changes stored state.

    Batch key and commit time are bookkeeping; an identical re-commit under
    another batch leaves the stored record untouched.
    """
    return (
        record.thread_id,
        record.partition.value,
        record.role.value,
        record.content,
        int(record.confidence),
        round(float(record.drift_score), 4),
        _canonical(record.profile),
        record.override_reason,
    )


def entry_state(entry: Any) -> Tuple:
    if isinstance(entry, SourceAuthorEntry):
        return (entry.thread_id, entry.content, int(entry.confidence))
    if isinstance(entry, SubjectRelevanceEntry):
        return (entry.thread_id, tuple(entry.keywords), int(entry.relevance_score))
    raise TypeError(f"Unsupported index entry: {type(entry).__name__}")


def record_to_row(record: PartitionRecord) -> Dict[str, Any]:
    return {
        "message_id": record.message_id,
        "thread_id": record.thread_id,
        "partition": record.partition.value,
        "role": record.role.value,
        "content": record.content,
        "confidence": int(record.confidence),
        "drift_score": float(record.drift_score),
        "profile": _canonical(record.profile),
        "batch_key": record.batch_key,
        "committed_at": record.committed_at,
        "override_reason": record.override_reason,
    }


def anchor_to_row(anchor: CorrectionAnchor) -> Dict[str, Any]:
    return {
        "source_message_id": anchor.source_message_id,
        "thread_id": anchor.thread_id,
        "category": anchor.category.value,
        "context": anchor.context,
        "truth_value": anchor.truth_value,
        "confidence": float(anchor.confidence),
        "created_at": anchor.created_at,
    }
