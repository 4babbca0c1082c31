"""Tests for the strata command line."""

import json
from unittest.mock import patch

import pytest

from strata.cli.__main__ import main


def run_cli(*argv):
    """Invoke ``main`` with ``argv``; returns the exit code (None if it returned)."""
    with patch("sys.argv", ["strata", *argv]):
        try:
            main()
        except SystemExit as e:
            return e.code
    return None


@pytest.fixture
def db(tmp_path):
    return str(tmp_path / "cli.db")


@pytest.fixture
def completed_run(tmp_path, db, export_file, capsys):
    """A committed run of the clean export; returns its run directory."""
    run_dir = tmp_path / "run-r1"
    code = run_cli("--db", db, "run", str(export_file), "--run-id", "r1", "--output", str(run_dir))
    assert code == 0
    capsys.readouterr()
    return run_dir


class TestRun:
    def test_json_report(self, tmp_path, db, export_file, capsys):
        code = run_cli(
            "--db", db, "run", str(export_file), "--json", "--run-id", "r1", "--output", str(tmp_path / "out")
        )
        assert code == 0
        report = json.loads(capsys.readouterr().out)
        assert report["run_id"] == "r1"
        assert report["partitions"]["primary"] == 5
        assert (tmp_path / "out" / "report.json").exists()

    def test_text_report(self, tmp_path, db, export_file, capsys):
        assert run_cli("--db", db, "run", str(export_file), "--output", str(tmp_path / "out")) == 0
        out = capsys.readouterr().out
        assert "Partitions:" in out
        assert "Report:" in out

    def test_missing_export(self, tmp_path, db, capsys):
        assert run_cli("--db", db, "run", str(tmp_path / "missing.json"), "--output", str(tmp_path / "o")) == 2
        assert "File not found" in capsys.readouterr().out

    def test_invalid_config(self, db, export_file):
        assert run_cli("--db", db, "run", str(export_file), "--batch-size", "0") == 1

    def test_no_source(self, db):
        assert run_cli("--db", db, "run") == 1

    def test_dry_run_leaves_store_empty(self, tmp_path, db, export_file, capsys):
        code = run_cli("--db", db, "run", str(export_file), "--dry-run", "--json", "--output", str(tmp_path / "o"))
        assert code == 0
        assert json.loads(capsys.readouterr().out)["mode"] == "dry_run"
        assert not (tmp_path / "cli.db").exists()

    def test_environment_overrides(self, tmp_path, db, export_file, capsys, monkeypatch):
        monkeypatch.setenv("STRATA_BATCH_SIZE", "oops")
        assert run_cli("--db", db, "run", str(export_file), "--output", str(tmp_path / "o")) == 1

    def test_title_filter(self, tmp_path, db, export_file, capsys):
        code = run_cli(
            "--db", db, "run", str(export_file), "--title", "nothing like it", "--json", "--output", str(tmp_path / "o")
        )
        assert code == 0
        assert json.loads(capsys.readouterr().out)["total_threads"] == 0


class TestPartitions:
    def test_counts(self, completed_run, db, capsys):
        assert run_cli("--db", db, "partitions", "counts", "--json") is None
        data = json.loads(capsys.readouterr().out)
        assert data["partitions"] == {"primary": 5, "sandbox": 0, "quarantine": 0}
        assert data["indexes"]["source_author"] == 3

    def test_list(self, completed_run, db, capsys):
        run_cli("--db", db, "partitions", "list", "primary", "--limit", "2", "--json")
        records = json.loads(capsys.readouterr().out)
        assert len(records) == 2
        assert records[0]["strategy"] == "full"

    def test_list_empty(self, completed_run, db, capsys):
        run_cli("--db", db, "partitions", "list", "quarantine")
        assert "No messages in quarantine." in capsys.readouterr().out

    def test_search(self, completed_run, db, capsys):
        run_cli("--db", db, "partitions", "search", "optional", "--json")
        ids = {r["message_id"] for r in json.loads(capsys.readouterr().out)}
        assert ids == {"conv-clean-m2", "conv-clean-m3"}

    def test_anchors(self, completed_run, db, capsys):
        run_cli("--db", db, "anchors")
        out = capsys.readouterr().out
        assert "Correction anchors (1)" in out
        assert "conv-clean-m2" in out

    def test_override(self, completed_run, db, capsys):
        assert run_cli("--db", db, "override", "conv-clean-m1", "sandbox", "--reason", "check") is None
        assert "moved to sandbox" in capsys.readouterr().out
        run_cli("--db", db, "partitions", "counts", "--json")
        assert json.loads(capsys.readouterr().out)["partitions"]["sandbox"] == 1

    def test_override_unknown_message(self, completed_run, db):
        assert run_cli("--db", db, "override", "nope", "sandbox") == 1

    def test_invalid_partition_choice(self, db):
        assert run_cli("--db", db, "partitions", "list", "attic") == 2


class TestAuditAndCheckpoints:
    def test_audit_summary(self, completed_run, capsys):
        run_cli("audit", "summary", "--run-dir", str(completed_run), "--json")
        summary = json.loads(capsys.readouterr().out)
        assert summary["total"] > 0
        assert "pipeline" in summary["by_stage"]

    def test_audit_show_filtered(self, completed_run, capsys):
        run_cli("audit", "show", "--run-dir", str(completed_run), "--type", "batch", "--json")
        events = json.loads(capsys.readouterr().out)
        assert [e["event_type"] for e in events] == ["batch.completed"]

    def test_audit_show_by_run_id(self, completed_run, strata_home, capsys):
        # Runs are looked up under the data directory by id
        assert run_cli("audit", "show", "r1") == 1

    def test_checkpoints(self, completed_run, capsys):
        run_cli("checkpoints", "list", "--run-dir", str(completed_run))
        assert "batch 1" in capsys.readouterr().out

        assert run_cli("checkpoints", "verify", "--run-dir", str(completed_run), "--json") is None
        assert json.loads(capsys.readouterr().out) == {"valid": True, "checkpoints": 2}

    def test_verify_detects_tampering(self, completed_run, capsys):
        (checkpoint_file,) = (completed_run / "checkpoints").glob("checkpoint_*_batch_start_*.json")
        data = json.loads(checkpoint_file.read_text(encoding="utf-8"))
        data["checkpoint_data"]["processed_threads"] = 7
        checkpoint_file.write_text(json.dumps(data), encoding="utf-8")

        assert run_cli("checkpoints", "verify", "--run-dir", str(completed_run)) == 1
        assert "invalid" in capsys.readouterr().out
