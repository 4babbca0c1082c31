"""Shared helpers for strata: data directory resolution and run identifiers."""

import logging
import os
import re
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


def get_strata_home() -> Path:
    """Resolve the strata data directory.

    Resolution order:
    1. STRATA_DATA_DIR environment variable
    2. ~/.strata
    3. <system temp>/strata if the home directory is not writable
    """
    env_dir = os.environ.get("STRATA_DATA_DIR")
    if env_dir:
        return Path(env_dir).expanduser()

    home = Path.home() / ".strata"
    try:
        home.mkdir(parents=True, exist_ok=True)
        return home
    except OSError as e:
        fallback = Path(tempfile.gettempdir()) / "strata"
        logger.warning(f"Cannot use {home} ({e}), falling back to {fallback}")
        return fallback


def new_run_id() -> str:
    """Generate a sortable run identifier: ``YYYYmmdd-HHMMSS-<8 hex>``."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


_RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,99}$")


def validate_run_id(run_id: str) -> str:
    """Reject run ids that could escape the runs directory."""
    if not isinstance(run_id, str) or not _RUN_ID_PATTERN.match(run_id):
        raise ValueError(f"Invalid run id: {run_id!r}")
    return run_id


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
