"""End-to-end pipeline runs over export files."""

import json

import pytest

from strata.config import PipelineConfig
from strata.pipeline import ArchaeologyPipeline, run_directory
from strata.protocols import InputError, ThreadCriteria
from strata.storage import InMemoryPartitionStore, SQLitePartitionStore
from strata.types import OperatingMode


def _write_export(tmp_path, conversations, name="conversations.json"):
    path = tmp_path / name
    path.write_text(json.dumps(conversations), encoding="utf-8")
    return path


@pytest.fixture
def pipeline(tmp_path, memory_store):
    return ArchaeologyPipeline(store=memory_store, output_dir=tmp_path / "run", run_id="r1")


class TestCleanRun:
    def test_report(self, pipeline, export_file, memory_store):
        report = pipeline.run_file(export_file)

        assert report.exit_code == 0
        assert report.total_threads == 1
        assert report.total_messages == 5
        assert report.partitions == {"primary": 5, "sandbox": 0, "quarantine": 0}
        assert report.tiers["high"] == 1
        assert report.anchors == 1
        assert report.committed_threads == 1
        assert report.drift_rolled_back_threads == 0
        assert report.quality["average_drift"] == 0.0
        assert memory_store.partition_counts()["primary"] == 5
        assert len(memory_store.list_anchors()) == 1

    def test_artifacts(self, pipeline, export_file, tmp_path):
        pipeline.run_file(export_file)
        run_dir = tmp_path / "run"

        report = json.loads((run_dir / "report.json").read_text(encoding="utf-8"))
        assert report["run_id"] == "r1"
        assert report["outcome"]["committed_threads"] == 1
        assert report["exit_code"] == 0

        events = [json.loads(line) for line in (run_dir / "audit.jsonl").read_text().splitlines()]
        assert events[0]["event_type"] == "pipeline.started"
        assert events[-1]["event_type"] == "pipeline.finished"
        sequences = [e["sequence"] for e in events]
        assert sequences == sorted(sequences)

        assert len(list((run_dir / "checkpoints").glob("checkpoint_*.json"))) == 2

    def test_rerun_is_idempotent(self, tmp_path, export_file, memory_store):
        first = ArchaeologyPipeline(store=memory_store, output_dir=tmp_path / "a", run_id="a")
        second = ArchaeologyPipeline(store=memory_store, output_dir=tmp_path / "b", run_id="b")
        first.run_file(export_file)
        report = second.run_file(export_file)
        assert report.partitions["primary"] == 5
        assert memory_store.partition_counts() == {"primary": 5, "sandbox": 0, "quarantine": 0}
        assert len(memory_store.list_anchors()) == 1


class TestDriftingRun:
    def test_rolled_back_batch(self, pipeline, tmp_path, drifting_conversation, memory_store):
        report = pipeline.run_file(_write_export(tmp_path, [drifting_conversation]))

        assert report.drift_rolled_back_threads == 1
        assert report.committed_threads == 0
        assert report.partitions == {"primary": 0, "sandbox": 0, "quarantine": 0}
        assert report.tiers["quarantine"] == 1
        assert report.quality["rollbacks_executed"] == 1
        # A drift rollback is policy, not an error
        assert report.exit_code == 0
        assert memory_store.partition_counts() == {"primary": 0, "sandbox": 0, "quarantine": 0}

    def test_mixed_export(self, pipeline, tmp_path, clean_conversation, drifting_conversation):
        report = pipeline.run_file(_write_export(tmp_path, [clean_conversation, drifting_conversation]))
        assert report.partitions == {"primary": 5, "sandbox": 0, "quarantine": 4}
        assert report.routing["rejected"] == 4
        assert report.committed_threads == 2


class TestInputs:
    def test_missing_file(self, pipeline, tmp_path):
        with pytest.raises(InputError):
            pipeline.run_file(tmp_path / "missing.json")
        assert pipeline.audit.filter(event_type="pipeline.input_error")
        assert not pipeline.report_path.exists()

    def test_malformed_conversations_skipped(self, pipeline, tmp_path, clean_conversation):
        report = pipeline.run_file(_write_export(tmp_path, [clean_conversation, {"id": "broken"}, "junk"]))
        assert report.total_threads == 1
        assert [s["conversation_id"] for s in report.skipped_conversations] == ["broken", None]
        assert report.exit_code == 0

    def test_criteria(self, pipeline, export_file):
        report = pipeline.run_file(export_file, ThreadCriteria(title_contains="unrelated"))
        assert report.total_threads == 0
        assert report.exit_code == 0

    def test_invalid_run_id(self):
        with pytest.raises(ValueError):
            ArchaeologyPipeline(run_id="../escape")


class TestStores:
    def test_default_store_is_sqlite(self, strata_home):
        pipeline = ArchaeologyPipeline(run_id="r1")
        assert isinstance(pipeline.store, SQLitePartitionStore)
        assert pipeline.run_dir == strata_home / "runs" / "r1"
        assert run_directory("r1") == pipeline.run_dir

    def test_dry_run_persists_nothing(self, strata_home, export_file):
        config = PipelineConfig(mode=OperatingMode.DRY_RUN)
        pipeline = ArchaeologyPipeline(config, run_id="dry")
        assert isinstance(pipeline.store, InMemoryPartitionStore)

        report = pipeline.run_file(export_file)
        assert report.mode == "dry_run"
        assert report.partitions["primary"] == 5
        assert pipeline.store.partition_counts()["primary"] == 0
        assert not (strata_home / "strata.db").exists()
        assert not (pipeline.run_dir / "checkpoints").exists()
        assert pipeline.report_path.exists()
