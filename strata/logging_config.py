"""Logging setup for strata.

Two kinds of output live under ``<data_dir>/logs``:

- ``local-YYYY-MM-DD.log``: operational log for the ``strata`` logger tree
- ``pipeline-events-YYYY-MM-DD.log``: one line per pipeline milestone
  (parse, batch, commit, checkpoint), greppable across runs

The audit log is a separate data artifact; see ``strata.audit``.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

from strata.utils import get_strata_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

logger = logging.getLogger(__name__)


def _log_dir() -> Path:
    return get_strata_home() / "logs"


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_strata_logging(run_id: str = "default", level: str = "INFO") -> logging.Logger:
    """Configure the ``strata`` logger for a run.

    Args:
        run_id: Run identifier, recorded in the first log line
        level: Level name (case-insensitive). Invalid names fall back to INFO.

    Returns:
        The configured ``strata`` logger. Calling this again does not add
        duplicate handlers.
    """
    strata_logger = logging.getLogger("strata")

    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    strata_logger.setLevel(resolved)

    log_dir = _log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"local-{_today()}.log"
    formatter = logging.Formatter(LOG_FORMAT)

    has_file = any(isinstance(h, logging.FileHandler) for h in strata_logger.handlers)
    if not has_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        strata_logger.addHandler(file_handler)

    if resolved == logging.DEBUG:
        has_console = any(
            isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
            for h in strata_logger.handlers
        )
        if not has_console:
            console = logging.StreamHandler()
            console.setFormatter(formatter)
            strata_logger.addHandler(console)

    strata_logger.debug(f"Logging configured for run {run_id} at {logging.getLevelName(resolved)}")
    return strata_logger


def log_pipeline_event(event_type: str, details: str, run_id: str = "default") -> None:
    """Append one milestone line to the pipeline events log.

    Write failures are logged at DEBUG and never raised.
    """
    try:
        log_dir = _log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        event_file = log_dir / f"pipeline-events-{_today()}.log"
        timestamp = datetime.now(timezone.utc).isoformat()
        with open(event_file, "a", encoding="utf-8") as f:
            f.write(f"{timestamp} | {event_type} | run={run_id} | {details}\n")
    except OSError as e:
        logger.debug(f"Could not write pipeline event {event_type}: {e}")


def log_parse(run_id: str, threads: int, messages: int, skipped: int = 0) -> None:
    log_pipeline_event(
        "parse", f"threads={threads}, messages={messages}, skipped={skipped}", run_id
    )


def log_batch(run_id: str, batch_number: int, status: str, drift: float, threads: int) -> None:
    log_pipeline_event(
        "batch",
        f"batch={batch_number}, status={status}, drift={drift:.1f}, threads={threads}",
        run_id,
    )


def log_commit(run_id: str, batch_number: int, processed: int, attempted: int) -> None:
    log_pipeline_event(
        "commit",
        f"batch={batch_number}, processed={processed}, attempted={attempted}",
        run_id,
    )


def log_checkpoint(run_id: str, marker_type: str, batch_number: int, content_hash: str) -> None:
    log_pipeline_event(
        "checkpoint",
        f"type={marker_type}, batch={batch_number}, hash={content_hash[:12]}...",
        run_id,
    )
