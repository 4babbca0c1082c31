"""Handler registry for MCP tools.

Merges HANDLERS and VALIDATORS from all sub-modules into unified dicts.
"""

from typing import Callable, Dict

from strata.mcp.handlers.partitions import HANDLERS as _PARTITIONS_H
from strata.mcp.handlers.partitions import VALIDATORS as _PARTITIONS_V
from strata.mcp.handlers.pipeline import HANDLERS as _PIPELINE_H
from strata.mcp.handlers.pipeline import VALIDATORS as _PIPELINE_V

HANDLERS: Dict[str, Callable] = {
    **_PIPELINE_H,
    **_PARTITIONS_H,
}

VALIDATORS: Dict[str, Callable] = {
    **_PIPELINE_V,
    **_PARTITIONS_V,
}
