"""End-to-end archaeology run.

Wires the stages together for one run:

    source -> parser -> (per batch: analyzer -> checkpoint -> router) -> report

Each run gets a directory (``<data_dir>/runs/<run_id>/`` by default) that
holds the audit log, the checkpoint files and the report.
"""

import logging
import time
from pathlib import Path
from typing import List, Optional, Union

from strata.audit import AuditLog
from strata.checkpoints import CheckpointChain
from strata.config import PipelineConfig
from strata.drift.analyzer import DriftAnalyzer
from strata.importers.export_parser import ExportParser
from strata.logging_config import log_parse, log_pipeline_event
from strata.orchestrator import BatchOrchestrator
from strata.protocols import DriftDetector, InputError, PartitionStore, ThreadCriteria, ThreadSource
from strata.report import PipelineReport
from strata.router import MemoryRouter
from strata.sources import FileThreadSource
from strata.storage import InMemoryPartitionStore, SQLitePartitionStore
from strata.types import Severity, Stage
from strata.utils import get_strata_home, new_run_id, validate_run_id

logger = logging.getLogger(__name__)

AUDIT_FILENAME = "audit.jsonl"
REPORT_FILENAME = "report.json"
CHECKPOINT_DIRNAME = "checkpoints"


def run_directory(run_id: str, output_dir: Optional[Union[str, Path]] = None) -> Path:
    if output_dir:
        return Path(output_dir).expanduser()
    return get_strata_home() / "runs" / run_id


class ArchaeologyPipeline:
    """One configured pipeline run.

    Args:
        config: Pipeline settings (defaults if omitted)
        store: Partition store; defaults to SQLite, or in-memory for dry runs
        output_dir: Directory for run artifacts
        run_id: Run identifier; generated if omitted
        detectors: Drift detector registry override
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        *,
        store: Optional[PartitionStore] = None,
        output_dir: Optional[Union[str, Path]] = None,
        run_id: Optional[str] = None,
        detectors: Optional[List[DriftDetector]] = None,
    ):
        self.config = config or PipelineConfig()
        self.run_id = validate_run_id(run_id) if run_id else new_run_id()
        self.run_dir = run_directory(self.run_id, output_dir)

        if store is None:
            store = InMemoryPartitionStore() if self.config.dry_run else SQLitePartitionStore()
        self.store = store

        self.audit = AuditLog(self.run_dir / AUDIT_FILENAME, level=self.config.audit_level)
        # Dry runs keep checkpoints in memory
        self.checkpoints = CheckpointChain(
            None if self.config.dry_run else self.run_dir / CHECKPOINT_DIRNAME,
            run_id=self.run_id,
            sink=self.audit,
        )
        self.parser = ExportParser(sink=self.audit, domain_terms=self.config.domain_terms)
        self.analyzer = DriftAnalyzer(self.config, sink=self.audit, detectors=detectors)
        self.router = MemoryRouter(self.store, sink=self.audit, config=self.config)
        self.orchestrator = BatchOrchestrator(
            self.analyzer,
            self.router,
            self.checkpoints,
            config=self.config,
            sink=self.audit,
            run_id=self.run_id,
        )

    @property
    def report_path(self) -> Path:
        return self.run_dir / REPORT_FILENAME

    def run_file(self, path: Union[str, Path], criteria: Optional[ThreadCriteria] = None) -> PipelineReport:
        return self.run(FileThreadSource(path), criteria)

    def run(self, source: ThreadSource, criteria: Optional[ThreadCriteria] = None) -> PipelineReport:
        """Fetch, parse, analyze and commit everything ``source`` yields.

        Raises:
            InputError: If the source cannot produce a readable export
        """
        started = time.perf_counter()
        self.audit.record(
            "pipeline.started",
            f"Run {self.run_id} from {source!r}",
            stage=Stage.PIPELINE,
            run_id=self.run_id,
            config=self.config.to_dict(),
        )
        log_pipeline_event("run_start", f"mode={self.config.mode.value}, source={source!r}", self.run_id)

        try:
            raw = source.fetch_threads(criteria)
        except InputError as e:
            logger.error(f"Input error: {e}")
            self.audit.record(
                "pipeline.input_error",
                str(e),
                stage=Stage.PIPELINE,
                severity=Severity.CRITICAL,
            )
            raise

        parse_started = time.perf_counter()
        parsed = self.parser.parse_conversations(raw)
        parse_seconds = time.perf_counter() - parse_started
        log_parse(self.run_id, len(parsed.threads), parsed.message_count, len(parsed.skipped))
        logger.info(
            f"Parsed {len(parsed.threads)} threads ({parsed.message_count} messages), "
            f"skipped {len(parsed.skipped)}"
        )

        result = self.orchestrator.run(parsed.threads)

        timings = {
            "fetch": parse_started - started,
            "parse": parse_seconds,
            "analyze": result.timings.get("analyze", 0.0),
            "commit": result.timings.get("commit", 0.0),
        }
        timings["total"] = time.perf_counter() - started

        self.audit.record(
            "pipeline.finished",
            f"Run {self.run_id} finished",
            stage=Stage.PIPELINE,
            severity=Severity.HIGH if result.has_unrecovered_failure else Severity.LOW,
            threads=len(parsed.threads),
            messages=parsed.message_count,
        )
        report = PipelineReport.build(
            self.run_id,
            self.config.mode.value,
            parsed.message_count,
            result,
            skipped=[{"conversation_id": s.conversation_id, "reason": s.reason} for s in parsed.skipped],
            anchors=len(self.analyzer.anchors),
            audit_events=len(self.audit),
            timings=timings,
        )
        report.write(self.report_path)
        log_pipeline_event(
            "run_end",
            f"exit_code={report.exit_code}, committed_threads={report.committed_threads}",
            self.run_id,
        )
        return report
