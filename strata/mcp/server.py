"""
Strata MCP Server - conversation archaeology for MCP clients.

Exposes pipeline runs, partition browsing, correction anchors and manual
overrides as MCP tools, so a review client can inspect and correct what
the pipeline imported.

Usage:
    strata mcp  # Start MCP server (stdio transport)
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from strata.mcp.handlers import HANDLERS, VALIDATORS
from strata.mcp.tool_definitions import TOOLS
from strata.protocols import InputError, PartitionStore, StorageError, StorageUnavailableError
from strata.storage import SQLitePartitionStore

logger = logging.getLogger(__name__)

# Initialize MCP server
mcp = Server("strata")

# Database path for this MCP session (None = default under the data dir)
_db_path: Optional[str] = None


def set_db_path(db_path: Optional[str]) -> None:
    """Set the partition store path for this MCP session."""
    global _db_path
    _db_path = db_path
    # Clear cached instance so next get_store uses the new path
    if hasattr(get_store, "_instance"):
        delattr(get_store, "_instance")


def get_store() -> PartitionStore:
    """Get or create the partition store."""
    if not hasattr(get_store, "_instance"):
        get_store._instance = SQLitePartitionStore(_db_path)  # type: ignore[attr-defined]
    return get_store._instance  # type: ignore[attr-defined]


# =============================================================================
# INPUT VALIDATION & ERROR HANDLING
# =============================================================================


def validate_tool_input(name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and sanitize MCP tool inputs."""
    try:
        if not isinstance(arguments, dict):
            raise ValueError(f"arguments must be an object, got {type(arguments).__name__}")

        validator = VALIDATORS.get(name)
        if validator is None:
            raise ValueError(f"Unknown tool: {name}")
        return validator(arguments)

    except (ValueError, TypeError) as e:
        logger.warning(f"Input validation failed for tool {name}: {e}")
        raise ValueError(f"Invalid input: {str(e)}")


def handle_tool_error(e: Exception, tool_name: str, arguments: Dict[str, Any]) -> List[TextContent]:
    """Handle tool errors without leaking internals."""
    if isinstance(e, (ValueError, InputError)):
        logger.warning(f"Invalid input for tool {tool_name}: {e}")
        text = str(e) if str(e).startswith("Invalid input") else f"Invalid input: {e}"
        return [TextContent(type="text", text=text)]

    elif isinstance(e, PermissionError):
        logger.warning(f"Permission denied for tool {tool_name}")
        return [TextContent(type="text", text="Access denied")]

    elif isinstance(e, FileNotFoundError):
        logger.warning(f"Resource not found for tool {tool_name}")
        return [TextContent(type="text", text="Resource not found")]

    elif isinstance(e, (ConnectionError, StorageUnavailableError, StorageError)):
        logger.error(f"Storage error for tool {tool_name}: {e}")
        return [TextContent(type="text", text="Service temporarily unavailable")]

    else:
        # Unknown error - log full details but return generic message
        argument_keys = list(arguments.keys()) if isinstance(arguments, dict) else []
        logger.error(
            f"Internal error in tool {tool_name}",
            extra={
                "tool_name": tool_name,
                "arguments_keys": argument_keys,
                "error_type": type(e).__name__,
                "error_message": str(e),
            },
            exc_info=True,
        )
        return [TextContent(type="text", text="Internal server error")]


# =============================================================================
# MCP PROTOCOL HANDLERS
# =============================================================================


@mcp.list_tools()
async def list_tools() -> list[Tool]:
    """List available archaeology tools."""
    return list(TOOLS)


@mcp.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Handle tool calls with validation and error handling."""
    try:
        sanitized_args = validate_tool_input(name, arguments)
        handler = HANDLERS.get(name)
        if handler is None:
            # Should not reach here due to validation
            logger.error(f"Unexpected tool name after validation: {name}")
            return [TextContent(type="text", text=f"Tool '{name}' is not available")]

        result = handler(sanitized_args, get_store())
        return [TextContent(type="text", text=result)]

    except Exception as e:
        return handle_tool_error(e, name, arguments)


async def run_server():
    """Run the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await mcp.run(
            read_stream,
            write_stream,
            mcp.create_initialization_options(),
        )


def main(db_path: Optional[str] = None):
    """Entry point for MCP server."""
    set_db_path(db_path)
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
