"""Rollback checkpoint chain.

A checkpoint is an immutable JSON file written before a batch starts (and
on emergency stops). Checkpoints form a hash chain: each one stores the
previous checkpoint's hash, and its own hash covers the pre-batch state
(processed thread count and last processed thread id).

The chain has a single writer. Sequence numbers and timestamps are strictly
increasing; batch numbers never decrease.
"""

import hashlib
import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from strata.audit import AuditLog
from strata.logging_config import log_checkpoint
from strata.protocols import CheckpointChainError, EventSink, StorageUnavailableError
from strata.types import (
    CheckpointMarkerType,
    RollbackCheckpoint,
    Severity,
    Stage,
    parse_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

# Maximum checkpoint file size (1MB); markers are small
MAX_CHECKPOINT_SIZE = 1024 * 1024

GOOD_MARKERS = frozenset({CheckpointMarkerType.BATCH_START, CheckpointMarkerType.PHASE_COMPLETE})


def compute_checkpoint_hash(payload: Dict[str, Any]) -> str:
    """Deterministic sha256 over the canonical JSON of ``payload``."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _hash_payload(
    run_id: str,
    sequence: int,
    marker_type: CheckpointMarkerType,
    batch_number: int,
    processed_threads: int,
    last_processed_id: Optional[str],
    previous_hash: Optional[str],
) -> Dict[str, Any]:
    return {
        "run_id": run_id,
        "sequence": sequence,
        "marker_type": marker_type.value,
        "batch_number": batch_number,
        "processed_threads": processed_threads,
        "last_processed_id": last_processed_id,
        "previous_hash": previous_hash,
    }


def _next_timestamp(previous: Optional[str]) -> str:
    """Current UTC time, nudged forward if the clock has not advanced."""
    now = utc_now()
    if previous is None:
        return now
    prev_dt = parse_datetime(previous)
    now_dt = parse_datetime(now)
    if prev_dt is not None and now_dt is not None and now_dt <= prev_dt:
        return (prev_dt + timedelta(microseconds=1)).isoformat()
    return now


class CheckpointChain:
    """Writes, lists, verifies and restores rollback checkpoints.

    With ``directory=None`` checkpoints are kept in memory only (dry runs);
    their ``storage_ref`` then uses a ``memory://`` scheme.
    """

    def __init__(
        self,
        directory: Optional[Union[str, Path]] = None,
        *,
        run_id: str = "",
        sink: Optional[EventSink] = None,
    ):
        self.directory = Path(directory).expanduser() if directory else None
        self.run_id = run_id
        self.sink = sink if sink is not None else AuditLog()
        self._lock = threading.Lock()
        self._chain: List[RollbackCheckpoint] = []

    def __len__(self) -> int:
        return len(self._chain)

    def __iter__(self):
        return iter(list(self._chain))

    def checkpoints(self) -> List[RollbackCheckpoint]:
        return list(self._chain)

    def create(
        self,
        marker_type: CheckpointMarkerType,
        batch_number: int,
        processed_threads: int,
        last_processed_id: Optional[str],
    ) -> RollbackCheckpoint:
        """Append a checkpoint to the chain and persist it.

        Raises:
            CheckpointChainError: If ``batch_number`` is lower than the last one
            StorageUnavailableError: If the checkpoint file cannot be written
        """
        marker_type = CheckpointMarkerType(marker_type)
        with self._lock:
            last = self._chain[-1] if self._chain else None
            if last is not None and batch_number < last.batch_number:
                raise CheckpointChainError(
                    f"Checkpoint for batch {batch_number} after batch {last.batch_number}"
                )

            sequence = last.sequence + 1 if last else 1
            previous_hash = last.content_hash if last else None
            timestamp = _next_timestamp(last.timestamp if last else None)
            content_hash = compute_checkpoint_hash(
                _hash_payload(
                    self.run_id,
                    sequence,
                    marker_type,
                    batch_number,
                    processed_threads,
                    last_processed_id,
                    previous_hash,
                )
            )
            filename = f"checkpoint_{sequence:05d}_{marker_type.value}_batch{batch_number}.json"
            if self.directory is not None:
                storage_ref = str(self.directory / filename)
            else:
                storage_ref = f"memory://{self.run_id or 'run'}/{filename}"

            checkpoint = RollbackCheckpoint(
                sequence=sequence,
                timestamp=timestamp,
                marker_type=marker_type,
                batch_number=batch_number,
                processed_threads=processed_threads,
                last_processed_id=last_processed_id,
                content_hash=content_hash,
                previous_hash=previous_hash,
                storage_ref=storage_ref,
                run_id=self.run_id,
            )
            if self.directory is not None:
                self._persist(checkpoint)
            self._chain.append(checkpoint)

        log_checkpoint(self.run_id or "default", marker_type.value, batch_number, content_hash)
        self.sink.record(
            "checkpoint.written",
            f"{marker_type.value} checkpoint for batch {batch_number}",
            stage=Stage.ORCHESTRATOR,
            severity=(
                Severity.HIGH if marker_type == CheckpointMarkerType.EMERGENCY_STOP else Severity.LOW
            ),
            sequence=sequence,
            batch_number=batch_number,
            processed_threads=processed_threads,
            last_processed_id=last_processed_id,
            content_hash=content_hash,
            storage_ref=checkpoint.storage_ref,
        )
        return checkpoint

    def _persist(self, checkpoint: RollbackCheckpoint) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create checkpoint directory: {e}")
            raise StorageUnavailableError(f"Cannot create checkpoint directory: {e}")

        path = Path(checkpoint.storage_ref)
        if path.exists():
            raise CheckpointChainError(f"Checkpoint already exists: {path}")
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(checkpoint.to_dict(), f, indent=2)
        except OSError as e:
            logger.error(f"Cannot save checkpoint: {e}")
            raise StorageUnavailableError(f"Cannot save checkpoint: {e}")

    def latest(
        self, marker_types: Optional[Iterable[CheckpointMarkerType]] = None
    ) -> Optional[RollbackCheckpoint]:
        """Most recent checkpoint, optionally restricted to ``marker_types``."""
        wanted = set(marker_types) if marker_types is not None else None
        for checkpoint in reversed(self._chain):
            if wanted is None or checkpoint.marker_type in wanted:
                return checkpoint
        return None

    def last_good(self, before_batch: Optional[int] = None) -> Optional[RollbackCheckpoint]:
        """Most recent non-emergency checkpoint, optionally for a batch <= ``before_batch``."""
        for checkpoint in reversed(self._chain):
            if checkpoint.marker_type not in GOOD_MARKERS:
                continue
            if before_batch is not None and checkpoint.batch_number > before_batch:
                continue
            return checkpoint
        return None

    def verify(self) -> bool:
        """Recompute every hash and check ordering.

        Raises:
            CheckpointChainError: On the first inconsistency found
        """
        previous: Optional[RollbackCheckpoint] = None
        for checkpoint in self._chain:
            expected = compute_checkpoint_hash(
                _hash_payload(
                    checkpoint.run_id,
                    checkpoint.sequence,
                    checkpoint.marker_type,
                    checkpoint.batch_number,
                    checkpoint.processed_threads,
                    checkpoint.last_processed_id,
                    checkpoint.previous_hash,
                )
            )
            if expected != checkpoint.content_hash:
                raise CheckpointChainError(f"Hash mismatch at checkpoint {checkpoint.sequence}")
            if previous is not None:
                if checkpoint.previous_hash != previous.content_hash:
                    raise CheckpointChainError(f"Broken link at checkpoint {checkpoint.sequence}")
                if checkpoint.sequence <= previous.sequence:
                    raise CheckpointChainError(f"Sequence not increasing at {checkpoint.sequence}")
                if _as_datetime(checkpoint.timestamp) <= _as_datetime(previous.timestamp):
                    raise CheckpointChainError(f"Timestamp not increasing at {checkpoint.sequence}")
                if checkpoint.batch_number < previous.batch_number:
                    raise CheckpointChainError(f"Batch number decreased at {checkpoint.sequence}")
            elif checkpoint.previous_hash is not None:
                raise CheckpointChainError("First checkpoint must not reference a predecessor")
            previous = checkpoint
        return True

    @classmethod
    def load(
        cls, directory: Union[str, Path], *, sink: Optional[EventSink] = None
    ) -> "CheckpointChain":
        """Read a persisted chain back from ``directory``.

        Unreadable or oversized files are skipped with a warning; call
        ``verify()`` to detect gaps they leave in the chain.
        """
        source = Path(directory).expanduser()
        if not source.is_dir():
            raise FileNotFoundError(f"Checkpoint directory not found: {source}")

        loaded: List[RollbackCheckpoint] = []
        for path in sorted(source.glob("checkpoint_*.json")):
            try:
                size = path.stat().st_size
                if size > MAX_CHECKPOINT_SIZE:
                    logger.warning(f"Skipping oversized checkpoint {path.name} ({size} bytes)")
                    continue
                with open(path, "r", encoding="utf-8") as f:
                    loaded.append(RollbackCheckpoint.from_dict(json.load(f)))
            except (json.JSONDecodeError, OSError, KeyError, ValueError) as e:
                logger.warning(f"Could not load checkpoint {path.name}: {e}")

        loaded.sort(key=lambda c: c.sequence)
        chain = cls(source, run_id=loaded[-1].run_id if loaded else "", sink=sink)
        chain._chain = loaded
        return chain


def _as_datetime(value: str) -> datetime:
    parsed = parse_datetime(value)
    if parsed is None:
        raise CheckpointChainError(f"Invalid checkpoint timestamp: {value!r}")
    return parsed
