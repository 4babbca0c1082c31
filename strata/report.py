"""Final run report.

The report always distinguishes threads fully committed, threads rolled
back by the drift policy and threads lost to errors, and is written even
when the run aborts.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from statistics import mean
from typing import Any, Dict, List, Optional, Union

from strata.orchestrator import OrchestrationResult
from strata.protocols import StorageError
from strata.types import ReliabilityTier, utc_now

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INPUT_ERROR = 2

FLAGGED_TIERS = frozenset({ReliabilityTier.LOW, ReliabilityTier.QUARANTINE})


@dataclass
class PipelineReport:
    """Summary artifact of one pipeline run."""

    run_id: str
    mode: str
    total_threads: int = 0
    total_messages: int = 0
    skipped_conversations: List[Dict[str, Any]] = field(default_factory=list)
    partitions: Dict[str, int] = field(default_factory=dict)
    tiers: Dict[str, int] = field(default_factory=dict)
    anchors: int = 0
    routing: Dict[str, int] = field(default_factory=dict)
    threads_by_status: Dict[str, int] = field(default_factory=dict)
    committed_threads: int = 0
    drift_rolled_back_threads: int = 0
    error_failed_threads: int = 0
    quality: Dict[str, Any] = field(default_factory=dict)
    batches: List[Dict[str, Any]] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)
    aborted: bool = False
    abort_reason: Optional[str] = None
    audit_events: int = 0
    generated_at: str = field(default_factory=utc_now)

    @property
    def exit_code(self) -> int:
        if self.aborted or self.threads_by_status.get("failed", 0) > 0:
            return EXIT_FAILURE
        return EXIT_OK

    @classmethod
    def build(
        cls,
        run_id: str,
        mode: str,
        total_messages: int,
        result: OrchestrationResult,
        *,
        skipped: Optional[List[Dict[str, Any]]] = None,
        anchors: int = 0,
        audit_events: int = 0,
        timings: Optional[Dict[str, float]] = None,
    ) -> "PipelineReport":
        analyses = result.analyses()
        tiers = {t.value: 0 for t in ReliabilityTier}
        for analysis in analyses:
            tiers[analysis.profile.reliability_tier.value] += 1

        routing = result.routing_totals()
        message_confidences = [
            m.confidence.overall
            for analysis in analyses
            for m in analysis.thread.messages
            if m.confidence is not None
        ]
        message_drifts = [a.drift_score for analysis in analyses for a in analysis.analyses]

        quality = {
            "average_confidence": round(mean(message_confidences), 2) if message_confidences else 0.0,
            "average_drift": round(mean(message_drifts), 2) if message_drifts else 0.0,
            "high_quality_threads": tiers[ReliabilityTier.HIGH.value],
            "flagged_threads": sum(tiers[t.value] for t in FLAGGED_TIERS),
            "rollbacks_executed": result.rollbacks_executed,
        }

        return cls(
            run_id=run_id,
            mode=mode,
            total_threads=sum(len(b.threads) for b in result.batches),
            total_messages=total_messages,
            skipped_conversations=list(skipped or []),
            partitions={
                "primary": routing["primary"],
                "sandbox": routing["sandbox"],
                "quarantine": routing["quarantine"],
            },
            tiers=tiers,
            anchors=anchors,
            routing=routing,
            threads_by_status=result.threads_by_status(),
            committed_threads=result.committed_threads,
            drift_rolled_back_threads=result.drift_rolled_back_threads,
            error_failed_threads=result.error_failed_threads,
            quality=quality,
            batches=[b.to_dict() for b in result.batches],
            timings={k: round(v, 4) for k, v in (timings or result.timings).items()},
            aborted=result.aborted,
            abort_reason=result.abort_reason,
            audit_events=audit_events,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "mode": self.mode,
            "generated_at": self.generated_at,
            "total_threads": self.total_threads,
            "total_messages": self.total_messages,
            "skipped_conversations": list(self.skipped_conversations),
            "partitions": dict(self.partitions),
            "tiers": dict(self.tiers),
            "anchors": self.anchors,
            "routing": dict(self.routing),
            "threads_by_status": dict(self.threads_by_status),
            "outcome": {
                "committed_threads": self.committed_threads,
                "drift_rolled_back_threads": self.drift_rolled_back_threads,
                "error_failed_threads": self.error_failed_threads,
            },
            "quality": dict(self.quality),
            "batches": list(self.batches),
            "timings": dict(self.timings),
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "audit_events": self.audit_events,
            "exit_code": self.exit_code,
        }

    def write(self, path: Union[str, Path]) -> Path:
        target = Path(path).expanduser()
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
        except OSError as e:
            logger.error(f"Cannot write report: {e}")
            raise StorageError(f"Cannot write report: {e}")
        return target

    def format_text(self) -> str:
        lines = [
            f"Run {self.run_id} ({self.mode})",
            "=" * 50,
            f"Threads: {self.total_threads}  Messages: {self.total_messages}"
            f"  Skipped: {len(self.skipped_conversations)}",
            "",
            "Partitions:",
        ]
        for name, count in self.partitions.items():
            lines.append(f"  {name:<12} {count}")
        if self.routing.get("rejected"):
            lines.append(f"  {'rejected':<12} {self.routing['rejected']}")
        if self.routing.get("not_processed"):
            lines.append(f"  {'not processed':<12} {self.routing['not_processed']}")

        lines.append("")
        lines.append("Reliability tiers:")
        for name, count in self.tiers.items():
            lines.append(f"  {name:<12} {count}")

        lines.extend(
            [
                "",
                f"Committed threads:          {self.committed_threads}",
                f"Rolled back (drift policy): {self.drift_rolled_back_threads}",
                f"Failed (errors):            {self.error_failed_threads}",
                f"Correction anchors:         {self.anchors}",
                "",
                f"Average confidence: {self.quality.get('average_confidence', 0.0)}",
                f"Average drift:      {self.quality.get('average_drift', 0.0)}",
            ]
        )
        if self.timings:
            lines.append("")
            lines.append("Timings (s):")
            for stage, seconds in self.timings.items():
                lines.append(f"  {stage:<12} {seconds:.3f}")
        if self.aborted:
            lines.append("")
            lines.append(f"RUN ABORTED: {self.abort_reason}")
        return "\n".join(lines)
