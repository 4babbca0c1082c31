"""Tests for strata logging setup and the pipeline events log."""

import logging

from strata.logging_config import (
    log_batch,
    log_checkpoint,
    log_parse,
    log_pipeline_event,
    setup_strata_logging,
)


def _event_lines(home):
    files = list((home / "logs").glob("pipeline-events-*.log"))
    assert len(files) == 1
    return files[0].read_text(encoding="utf-8").splitlines()


class TestSetupLogging:
    def test_adds_single_file_handler(self, strata_home):
        logger = setup_strata_logging(run_id="r1")
        setup_strata_logging(run_id="r1")
        file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1
        assert list((strata_home / "logs").glob("local-*.log"))

    def test_invalid_level_falls_back_to_info(self):
        logger = setup_strata_logging(level="chatty")
        assert logger.level == logging.INFO

    def test_debug_adds_console_handler(self):
        logger = setup_strata_logging(level="debug")
        console = [
            h
            for h in logger.handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ]
        assert len(console) == 1


class TestPipelineEvents:
    def test_event_line_format(self, strata_home):
        log_pipeline_event("run_start", "mode=batch", "run-7")
        (line,) = _event_lines(strata_home)
        assert " | run_start | run=run-7 | mode=batch" in line

    def test_milestone_helpers(self, strata_home):
        log_parse("r", threads=2, messages=9, skipped=1)
        log_batch("r", 1, "completed", 12.345, 2)
        log_checkpoint("r", "batch_start", 1, "a" * 64)
        lines = _event_lines(strata_home)
        assert "threads=2, messages=9, skipped=1" in lines[0]
        assert "batch=1, status=completed, drift=12.3, threads=2" in lines[1]
        assert "hash=aaaaaaaaaaaa..." in lines[2]

    def test_unwritable_directory_is_not_raised(self, tmp_path, monkeypatch):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        monkeypatch.setenv("STRATA_DATA_DIR", str(blocker))
        log_pipeline_event("run_start", "ignored")
