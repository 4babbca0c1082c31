"""Batch orchestrator.

Threads are split into fixed-size batches in discovery order. Each batch
runs through ``pending -> processing -> {completed | failed | rolled_back}``:

1. Analyze the batch's threads (optionally on a bounded worker pool)
2. Aggregate drift = mean of the threads' overall drift
3. Write a ``batch_start`` checkpoint
4. Roll the batch back without committing if drift exceeds the threshold
5. Otherwise commit through the memory router

A commit failure marks the batch failed, writes an ``emergency_stop``
checkpoint and, with rollback enabled, reverts the batch's writes. An
unusable store aborts the run after that; any other failure lets the next
batch proceed. A run that is not aborted ends with a ``phase_complete``
checkpoint. Batches never overlap and checkpoints have a single writer.
"""

import logging
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from statistics import mean
from typing import Dict, List, Optional, Sequence

from strata.audit import AuditLog
from strata.checkpoints import CheckpointChain
from strata.config import PipelineConfig
from strata.drift.analyzer import DriftAnalyzer
from strata.logging_config import log_batch, log_commit
from strata.protocols import (
    EventSink,
    InvalidTransitionError,
    StorageError,
    StorageUnavailableError,
)
from strata.router import MemoryRouter, RoutingResult
from strata.types import (
    TERMINAL_BATCH_STATUSES,
    BatchStatus,
    CheckpointMarkerType,
    ParsedThread,
    RollbackCheckpoint,
    Severity,
    Stage,
    ThreadAnalysis,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    BatchStatus.PENDING: frozenset({BatchStatus.PROCESSING}),
    BatchStatus.PROCESSING: frozenset(
        {BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.ROLLED_BACK}
    ),
    BatchStatus.FAILED: frozenset({BatchStatus.ROLLED_BACK}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.ROLLED_BACK: frozenset(),
}


@dataclass
class Batch:
    """A contiguous slice of threads processed as one unit."""

    number: int  # 1-based
    threads: List[ParsedThread]
    batch_key: str
    status: BatchStatus = BatchStatus.PENDING
    history: List[BatchStatus] = field(default_factory=lambda: [BatchStatus.PENDING])
    aggregate_drift: float = 0.0
    analyses: List[ThreadAnalysis] = field(default_factory=list)
    failed_threads: Dict[str, str] = field(default_factory=dict)  # thread id -> error
    routing: Optional[RoutingResult] = None
    checkpoint: Optional[RollbackCheckpoint] = None
    restored_to: Optional[RollbackCheckpoint] = None
    drift_rollback: bool = False  # Rolled back by the drift policy, not an error
    error: Optional[str] = None
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def thread_ids(self) -> List[str]:
        return [t.id for t in self.threads]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BATCH_STATUSES

    def transition(self, target: BatchStatus) -> None:
        """Move to ``target``.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow it
        """
        target = BatchStatus(target)
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.number, self.status.value, target.value)
        self.status = target
        self.history.append(target)

    def to_dict(self) -> Dict:
        return {
            "number": self.number,
            "batch_key": self.batch_key,
            "status": self.status.value,
            "history": [s.value for s in self.history],
            "thread_ids": self.thread_ids,
            "aggregate_drift": self.aggregate_drift,
            "drift_rollback": self.drift_rollback,
            "failed_threads": dict(self.failed_threads),
            "error": self.error,
            "checkpoint": self.checkpoint.storage_ref if self.checkpoint else None,
            "restored_to": self.restored_to.storage_ref if self.restored_to else None,
            "routing": self.routing.to_dict() if self.routing else None,
            "timings": {k: round(v, 4) for k, v in self.timings.items()},
        }


@dataclass
class OrchestrationResult:
    """Outcome of all batches of a run."""

    run_id: str
    batches: List[Batch] = field(default_factory=list)
    aborted: bool = False
    abort_reason: Optional[str] = None
    anchors_saved: int = 0
    timings: Dict[str, float] = field(default_factory=dict)

    def threads_by_status(self) -> Dict[str, int]:
        """Thread count per batch status; batches left after an abort are ``pending``."""
        counts = {s.value: 0 for s in BatchStatus}
        for batch in self.batches:
            counts[batch.status.value] += len(batch.threads)
        return counts

    @property
    def committed_threads(self) -> int:
        """Threads committed by completed batches (failed threads excluded)."""
        return sum(
            len(b.threads) - len(b.failed_threads)
            for b in self.batches
            if b.status == BatchStatus.COMPLETED
        )

    @property
    def drift_rolled_back_threads(self) -> int:
        return sum(len(b.threads) for b in self.batches if b.drift_rollback)

    @property
    def error_failed_threads(self) -> int:
        """Threads lost to errors: failed batches plus isolated thread failures."""
        total = 0
        for batch in self.batches:
            if batch.error is not None:
                total += len(batch.threads)
            else:
                total += len(batch.failed_threads)
        return total

    @property
    def rollbacks_executed(self) -> int:
        return sum(1 for b in self.batches if b.status == BatchStatus.ROLLED_BACK)

    @property
    def has_unrecovered_failure(self) -> bool:
        return self.aborted or any(b.status == BatchStatus.FAILED for b in self.batches)

    def routing_totals(self) -> Dict[str, int]:
        keys = (
            "primary",
            "sandbox",
            "quarantine",
            "rejected",
            "source_author",
            "subject_relevance",
            "attempted",
            "processed",
        )
        totals = {k: 0 for k in keys}
        for batch in self.batches:
            if batch.routing is None or batch.status != BatchStatus.COMPLETED:
                continue
            for key in keys:
                totals[key] += getattr(batch.routing, key)
        totals["not_processed"] = totals["attempted"] - totals["processed"]
        return totals

    def analyses(self) -> List[ThreadAnalysis]:
        return [a for b in self.batches for a in b.analyses]


def plan_batches(threads: Sequence[ParsedThread], batch_size: int, run_id: str) -> List[Batch]:
    """Split ``threads`` into consecutive batches, preserving order."""
    if batch_size < 1:
        raise ValueError("batch_size must be a positive integer")
    batches = []
    for start in range(0, len(threads), batch_size):
        number = len(batches) + 1
        batches.append(
            Batch(
                number=number,
                threads=list(threads[start : start + batch_size]),
                batch_key=f"{run_id}:{number}",
            )
        )
    return batches


class BatchOrchestrator:
    """Drive analyzed commits batch by batch with checkpoint rollback."""

    def __init__(
        self,
        analyzer: DriftAnalyzer,
        router: MemoryRouter,
        checkpoints: CheckpointChain,
        *,
        config: Optional[PipelineConfig] = None,
        sink: Optional[EventSink] = None,
        run_id: str = "default",
    ):
        self.analyzer = analyzer
        self.router = router
        self.checkpoints = checkpoints
        self.config = config or PipelineConfig()
        self.sink = sink if sink is not None else AuditLog()
        self.run_id = run_id

    def run(self, threads: Sequence[ParsedThread]) -> OrchestrationResult:
        """Process every batch in order and return the per-batch outcome."""
        started = time.perf_counter()
        result = OrchestrationResult(
            run_id=self.run_id,
            batches=plan_batches(threads, self.config.batch_size, self.run_id),
        )
        self.sink.record(
            "run.started",
            f"{len(threads)} threads in {len(result.batches)} batches",
            stage=Stage.ORCHESTRATOR,
            run_id=self.run_id,
            mode=self.config.mode.value,
            batch_size=self.config.batch_size,
        )

        processed_threads = 0
        last_processed_id: Optional[str] = None
        for batch in result.batches:
            try:
                result.anchors_saved += self._process_batch(
                    batch, processed_threads, last_processed_id
                )
            except StorageUnavailableError as e:
                result.aborted = True
                result.abort_reason = str(e)
                logger.error(f"Aborting run {self.run_id} at batch {batch.number}: {e}")
                self.sink.record(
                    "run.aborted",
                    f"Storage unavailable at batch {batch.number}",
                    stage=Stage.ORCHESTRATOR,
                    severity=Severity.CRITICAL,
                    batch_number=batch.number,
                    error=str(e),
                )
                break
            processed_threads += len(batch.threads)
            if batch.threads:
                last_processed_id = batch.threads[-1].id

        if result.batches and not result.aborted:
            try:
                self.checkpoints.create(
                    CheckpointMarkerType.PHASE_COMPLETE,
                    result.batches[-1].number,
                    processed_threads,
                    last_processed_id,
                )
            except StorageUnavailableError as e:
                result.aborted = True
                result.abort_reason = str(e)
                logger.error(f"Could not write phase_complete checkpoint for run {self.run_id}: {e}")

        for key in ("analyze", "commit"):
            result.timings[key] = sum(b.timings.get(key, 0.0) for b in result.batches)
        result.timings["total"] = time.perf_counter() - started

        self.sink.record(
            "run.finished",
            "Run aborted" if result.aborted else "Run finished",
            stage=Stage.ORCHESTRATOR,
            severity=Severity.HIGH if result.has_unrecovered_failure else Severity.LOW,
            threads_by_status=result.threads_by_status(),
        )
        return result

    # === Batch lifecycle ===

    def _process_batch(
        self, batch: Batch, processed_threads: int, last_processed_id: Optional[str]
    ) -> int:
        """Run one batch to a terminal state. Returns anchors persisted.

        Raises:
            StorageUnavailableError: After the batch is marked failed, if the
                failure is fatal for the run
        """
        batch.transition(BatchStatus.PROCESSING)
        logger.info(f"Batch {batch.number}: {len(batch.threads)} threads")

        start = time.perf_counter()
        batch.analyses = self._analyze(batch)
        batch.timings["analyze"] = time.perf_counter() - start

        drifts = [a.profile.overall_drift for a in batch.analyses]
        batch.aggregate_drift = round(mean(drifts), 2) if drifts else 0.0

        try:
            batch.checkpoint = self.checkpoints.create(
                CheckpointMarkerType.BATCH_START,
                batch.number,
                processed_threads,
                last_processed_id,
            )
        except StorageUnavailableError as e:
            self._fail(batch, e)
            raise

        if self.config.rollback_on_failure and batch.aggregate_drift > self.config.max_batch_drift:
            batch.drift_rollback = True
            batch.restored_to = batch.checkpoint
            batch.transition(BatchStatus.ROLLED_BACK)
            logger.warning(
                f"Batch {batch.number} rolled back: drift {batch.aggregate_drift:.1f} "
                f"exceeds {self.config.max_batch_drift:.1f}"
            )
            self.sink.record(
                "batch.rolled_back",
                f"Aggregate drift {batch.aggregate_drift:.1f} exceeds "
                f"threshold {self.config.max_batch_drift:.1f}",
                stage=Stage.ORCHESTRATOR,
                severity=Severity.MEDIUM,
                batch_number=batch.number,
                aggregate_drift=batch.aggregate_drift,
                thread_ids=batch.thread_ids,
            )
            log_batch(self.run_id, batch.number, batch.status.value, batch.aggregate_drift, len(batch.threads))
            return 0

        start = time.perf_counter()
        try:
            batch.routing = self.router.commit_batch(
                batch.analyses, batch.batch_key, dry_run=self.config.dry_run
            )
            anchors_saved = 0
            if not self.config.dry_run:
                anchors_saved = self.router.save_anchors(
                    [anchor for analysis in batch.analyses for anchor in analysis.anchors]
                )
        except Exception as e:
            batch.timings["commit"] = time.perf_counter() - start
            self._fail(batch, e)
            if isinstance(e, StorageUnavailableError):
                raise
            return 0
        batch.timings["commit"] = time.perf_counter() - start

        batch.transition(BatchStatus.COMPLETED)
        self._discard_journal(batch)
        log_commit(self.run_id, batch.number, batch.routing.processed, batch.routing.attempted)
        log_batch(self.run_id, batch.number, batch.status.value, batch.aggregate_drift, len(batch.threads))
        self.sink.record(
            "batch.completed",
            f"Batch {batch.number} committed {batch.routing.processed}/{batch.routing.attempted} messages",
            stage=Stage.ORCHESTRATOR,
            severity=Severity.LOW if batch.routing.not_processed == 0 else Severity.MEDIUM,
            batch_number=batch.number,
            aggregate_drift=batch.aggregate_drift,
            dry_run=self.config.dry_run,
            processed_ratio=round(batch.routing.processed_ratio, 4),
        )
        return anchors_saved

    def _fail(self, batch: Batch, error: Exception) -> None:
        """Mark ``batch`` failed, write an emergency stop and roll back if enabled."""
        batch.error = f"{type(error).__name__}: {error}"
        batch.transition(BatchStatus.FAILED)
        logger.error(f"Batch {batch.number} failed: {batch.error}")
        self.sink.record(
            "batch.failed",
            f"Batch {batch.number} failed",
            stage=Stage.ORCHESTRATOR,
            severity=Severity.HIGH,
            batch_number=batch.number,
            error=batch.error,
        )

        last_good = self.checkpoints.last_good(before_batch=batch.number)
        try:
            self.checkpoints.create(
                CheckpointMarkerType.EMERGENCY_STOP,
                batch.number,
                last_good.processed_threads if last_good else 0,
                last_good.last_processed_id if last_good else None,
            )
        except StorageUnavailableError as e:
            logger.error(f"Could not write emergency stop for batch {batch.number}: {e}")

        if self.config.rollback_on_failure:
            self._restore(batch, last_good)
        else:
            self._discard_journal(batch)
        log_batch(self.run_id, batch.number, batch.status.value, batch.aggregate_drift, len(batch.threads))

    def _discard_journal(self, batch: Batch) -> None:
        """Drop the undo entries of a batch whose writes are final."""
        if self.config.dry_run:
            return
        try:
            dropped = self.router.store.discard_journal(batch.batch_key)
        except StorageUnavailableError:
            raise
        except StorageError as e:
            logger.error(f"Could not discard journal for batch {batch.number}: {e}")
            return
        logger.debug(f"Batch {batch.number}: discarded {dropped} journal entries")

    def _restore(self, batch: Batch, last_good: Optional[RollbackCheckpoint]) -> None:
        if not self.config.dry_run:
            try:
                reverted = self.router.store.revert_batch(batch.batch_key)
            except StorageError as e:
                logger.error(f"Rollback of batch {batch.number} failed: {e}")
                self.sink.record(
                    "batch.rollback_failed",
                    f"Could not revert batch {batch.number}",
                    stage=Stage.ORCHESTRATOR,
                    severity=Severity.CRITICAL,
                    batch_number=batch.number,
                    error=str(e),
                )
                return
        else:
            reverted = 0

        batch.restored_to = last_good
        batch.transition(BatchStatus.ROLLED_BACK)
        self.sink.record(
            "batch.restored",
            f"Batch {batch.number} reverted to checkpoint "
            f"{last_good.sequence if last_good else 'none'}",
            stage=Stage.ORCHESTRATOR,
            severity=Severity.HIGH,
            batch_number=batch.number,
            reverted_records=reverted,
            checkpoint=last_good.storage_ref if last_good else None,
        )

    # === Analysis ===

    def _analyze(self, batch: Batch) -> List[ThreadAnalysis]:
        if self.config.max_workers > 1 and len(batch.threads) > 1:
            return self._analyze_parallel(batch)

        analyses = []
        for thread in batch.threads:
            try:
                analyses.append(self.analyzer.analyze_thread(thread))
            except Exception as e:
                self._thread_failed(batch, thread, e)
        return analyses

    def _analyze_parallel(self, batch: Batch) -> List[ThreadAnalysis]:
        """Analyze on a bounded pool; results keep batch order.

        Each worker runs on a scratch analyzer. A thread still running
        ``thread_timeout_seconds`` after it started is failed and its scratch
        events and anchors are dropped. The pool is drained before returning,
        so no worker outlives the batch.
        """
        timeout = self.config.thread_timeout_seconds
        scratch = [self.analyzer.scratch() for _ in batch.threads]
        started: Dict[int, float] = {}

        def work(index: int) -> ThreadAnalysis:
            started[index] = time.monotonic()
            return scratch[index].analyze_thread(batch.threads[index])

        executor = ThreadPoolExecutor(
            max_workers=min(self.config.max_workers, len(batch.threads)),
            thread_name_prefix=f"strata-batch{batch.number}",
        )
        results: Dict[int, ThreadAnalysis] = {}
        try:
            pending = {executor.submit(work, index): index for index in range(len(batch.threads))}
            while pending:
                deadlines = [started[i] + timeout for i in pending.values() if i in started]
                wait_for = max(0.0, min(deadlines) - time.monotonic()) if deadlines else timeout
                done, _ = wait(pending, timeout=wait_for, return_when=FIRST_COMPLETED)
                for future in done:
                    index = pending.pop(future)
                    try:
                        results[index] = future.result()
                    except Exception as e:
                        self._thread_failed(batch, batch.threads[index], e)

                now = time.monotonic()
                for future, index in list(pending.items()):
                    if future.done():
                        continue
                    if index in started and now - started[index] >= timeout:
                        del pending[future]
                        self._thread_failed(
                            batch,
                            batch.threads[index],
                            TimeoutError(f"analysis exceeded {timeout}s"),
                        )
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        return [
            self.analyzer.absorb(scratch[index], results[index])
            for index in range(len(batch.threads))
            if index in results
        ]

    def _thread_failed(self, batch: Batch, thread: ParsedThread, error: Exception) -> None:
        batch.failed_threads[thread.id] = f"{type(error).__name__}: {error}"
        logger.error(f"Thread {thread.id} failed in batch {batch.number}: {error}")
        self.sink.record(
            "thread.failed",
            f"Analysis failed for thread {thread.id}",
            stage=Stage.ORCHESTRATOR,
            severity=Severity.HIGH,
            batch_number=batch.number,
            thread_id=thread.id,
            error=str(error),
        )


