"""
Strata - Conversation archaeology for tiered memory.

Scores exported chat threads for reliability and drift, then imports them
into primary, sandbox and quarantine memory partitions in checkpointed
batches.
"""

from .config import PipelineConfig
from .pipeline import ArchaeologyPipeline

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("strata-archaeology")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["ArchaeologyPipeline", "PipelineConfig"]
